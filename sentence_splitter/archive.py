"""ZIP bundling of encoded segments."""

import io
import zipfile


class ZipArchive:
    """Collects named blobs in insertion order and renders one ZIP file."""

    def __init__(self):
        self._entries: dict[str, bytes] = {}

    def add(self, name: str, data: bytes) -> None:
        if name in self._entries:
            raise ValueError(f"Duplicate archive entry: {name}")
        self._entries[name] = bytes(data)

    def names(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def to_bytes(self) -> bytes:
        output = io.BytesIO()
        with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, data in self._entries.items():
                zf.writestr(name, data)
        return output.getvalue()
