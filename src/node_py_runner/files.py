from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, Mapping, Sequence

logger = logging.getLogger(__name__)

INPUT_FILES_DIR = "input_files"
OUTPUT_DIR = "output"
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class InputFile:
    """A binary file handed over by a previous workflow step.

    Example:
        ```python
        f = InputFile(key="data", filename="report.csv", mime_type="text/csv", data=b"a,b\\n1,2\\n")
        ```
    """

    key: str
    filename: str
    mime_type: str
    data: bytes
    item_index: int = 0


@dataclass(frozen=True, slots=True)
class Attachment:
    """A named binary attachment produced by a run.

    Example:
        ```python
        att = Attachment(key="output_chart.png", filename="chart.png", mime_type="image/png", data=b"...")
        ```
    """

    key: str
    filename: str
    mime_type: str
    data: bytes

    def as_dict(self) -> dict[str, Any]:
        """Return attachment metadata without the payload.

        Example:
            ```python
            att.as_dict()  # {"key": ..., "filename": ..., "mimeType": ..., "size": ...}
            ```
        """
        return {
            "key": self.key,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "size": len(self.data),
        }


def files_from_items(items: Sequence[Mapping[str, Any]]) -> list[InputFile]:
    """Collect base64 binary entries attached to workflow items.

    Each item may carry `binary: {key: {"data", "fileName", "mimeType"}}`;
    entries without data or a file name are ignored.

    Example:
        ```python
        files = files_from_items([{"json": {}, "binary": {"doc": {"data": "aGk=", "fileName": "a.txt"}}}])
        files[0].data  # b"hi"
        ```
    """
    found: list[InputFile] = []
    for index, item in enumerate(items):
        binary = item.get("binary")
        if not isinstance(binary, Mapping):
            continue
        for key, entry in binary.items():
            if not isinstance(entry, Mapping) or not entry.get("data") or not entry.get("fileName"):
                continue
            try:
                data = base64.b64decode(str(entry["data"]), validate=True)
            except binascii.Error:
                logger.warning("Skipping binary entry %r on item %d: invalid base64", key, index)
                continue
            filename = str(entry["fileName"])
            found.append(
                InputFile(
                    key=str(key),
                    filename=filename,
                    mime_type=str(entry.get("mimeType") or guess_mime_type(filename)),
                    data=data,
                    item_index=index,
                )
            )
    return found


def guess_mime_type(filename: str) -> str:
    """Guess a MIME type from a file name.

    Example:
        ```python
        guess_mime_type("data.json")  # "application/json"
        ```
    """
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or DEFAULT_MIME_TYPE


def _safe_filename(name: str, index: int) -> str:
    """Reduce a file name to its last path component, never empty.

    Example:
        ```python
        _safe_filename("../../etc/passwd", 0)  # "passwd"
        ```
    """
    base = PurePath(name.replace("\\", "/")).name.strip()
    if base in {"", ".", ".."}:
        base = f"file_{index}"
    return base


def materialize_input_files(files: Sequence[InputFile], directory: Path) -> list[dict[str, Any]]:
    """Write input files into `directory` and return their descriptors.

    Colliding names get an index prefix so no file overwrites another.

    Example:
        ```python
        descriptors = materialize_input_files([f], Path("/tmp/run/input_files"))
        descriptors[0]["path"]  # "/tmp/run/input_files/report.csv"
        ```
    """
    directory.mkdir(parents=True, exist_ok=True)
    descriptors: list[dict[str, Any]] = []
    used: set[str] = set()
    for index, item in enumerate(files):
        base = _safe_filename(item.filename, index)
        name, attempt = base, 0
        while name in used:
            name = f"{index}_{base}" if attempt == 0 else f"{index}_{attempt}_{base}"
            attempt += 1
        used.add(name)
        path = directory / name
        path.write_bytes(item.data)
        descriptors.append(
            {
                "key": item.key,
                "filename": name,
                "path": str(path),
                "mimetype": item.mime_type or guess_mime_type(name),
                "size": len(item.data),
                "item_index": item.item_index,
            }
        )
    logger.debug("Materialized %d input file(s) in %s", len(descriptors), directory)
    return descriptors


def collect_output_files(directory: Path, max_file_mb: int | None = None) -> list[Attachment]:
    """Turn every regular file in an output directory into an attachment.

    Files larger than `max_file_mb` are skipped with a warning.

    Example:
        ```python
        attachments = collect_output_files(Path("/tmp/run/output"), max_file_mb=50)
        ```
    """
    if not directory.is_dir():
        return []
    limit = None if max_file_mb is None else max_file_mb * 1024 * 1024
    attachments: list[Attachment] = []
    for path in sorted(directory.iterdir()):
        if path.is_symlink() or not path.is_file():
            continue
        size = path.stat().st_size
        if limit is not None and size > limit:
            logger.warning("Skipping output file %s: %d bytes exceeds %d MB", path.name, size, max_file_mb)
            continue
        attachments.append(
            Attachment(
                key=f"output_{path.name}",
                filename=path.name,
                mime_type=guess_mime_type(path.name),
                data=path.read_bytes(),
            )
        )
    return attachments
