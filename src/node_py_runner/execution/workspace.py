from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "node_py_runner_"


class Workspace:
    """Uniquely named working directory owned by exactly one run.

    Used as a context manager, the directory is removed on every exit path.
    A failed removal is logged and kept in `cleanup_error`; it never raises.

    Example:
        ```python
        with Workspace.create() as ws:
            (ws.path / "script.py").write_text("print(1)")
        ws.cleanup_error  # None
        ```
    """

    def __init__(self, path: Path) -> None:
        """Wrap an existing directory path.

        Example:
            ```python
            ws = Workspace(Path(tempfile.mkdtemp()))
            ```
        """
        self.path = path
        self.cleaned_up = False
        self.cleanup_error: str | None = None

    @classmethod
    def create(cls, base_dir: str | Path | None = None) -> "Workspace":
        """Create a fresh, uniquely named directory.

        Example:
            ```python
            ws = Workspace.create()
            ```
        """
        return cls(Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=base_dir)))

    def subdirectory(self, name: str) -> Path:
        """Create (if needed) and return a directory inside the workspace.

        Example:
            ```python
            out = ws.subdirectory("output")
            ```
        """
        path = self.path / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def cleanup(self) -> None:
        """Remove the workspace and everything in it, once.

        Example:
            ```python
            ws.cleanup()
            ```
        """
        if self.cleaned_up:
            return
        self.cleaned_up = True
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            return
        except OSError as exc:
            self.cleanup_error = f"Failed to remove working directory {self.path}: {exc}"
            logger.warning(self.cleanup_error)

    def __enter__(self) -> "Workspace":
        """Example:
            ```python
            with Workspace.create() as workspace:
                workspace.path.exists()  # True
            ```
        """
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Remove the directory when the `with` block exits.

        Example:
            ```python
            with Workspace.create() as workspace:
                pass
            workspace.path.exists()  # False
            ```
        """
        self.cleanup()
