from __future__ import annotations

import _ctypes
import ctypes
import os
import subprocess
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence

from lexer import TBError


# Every extension module exports exactly one `void some_function(void)`.
EXTENSION_ENTRY_POINT = "some_function"
# Extra search directories, joined with os.pathsep.
SEARCH_PATH_ENV = "TAEBAEK_EXT_PATH"

EXTENSION_NOT_FOUND = "ExtensionNotFound"
ENTRY_POINT_MISSING = "EntryPointMissing"
EXTENSION_FAILED = "ExtensionFailed"

# Exit statuses of the isolated runner.
_EXIT_NOT_FOUND = 3
_EXIT_ENTRY_MISSING = 4
_EXIT_FAILED = 5

_ISOLATED_RUNNER = """
import ctypes
import sys

path, entry_point = sys.argv[1], sys.argv[2]
try:
    library = ctypes.CDLL(path)
except OSError as exc:
    sys.stderr.write(str(exc))
    sys.exit(%d)
function = getattr(library, entry_point, None)
if function is None:
    sys.exit(%d)
function.restype = None
function.argtypes = []
try:
    function()
except OSError as exc:
    sys.stderr.write(str(exc))
    sys.exit(%d)
""" % (_EXIT_NOT_FOUND, _EXIT_ENTRY_MISSING, _EXIT_FAILED)


class TBExtensionError(TBError):
    kind = EXTENSION_FAILED


def platform_suffix(platform: Optional[str] = None) -> str:
    p = (platform or sys.platform).lower()
    if p.startswith("win") or p == "cygwin":
        return ".dll"
    if p == "darwin":
        return ".dylib"
    return ".so"


def open_library(path: str) -> Any:
    return ctypes.CDLL(path)


def release_library(library: Any) -> None:
    handle = getattr(library, "_handle", None)
    if not handle:
        return
    if sys.platform.startswith("win"):
        _ctypes.FreeLibrary(handle)  # type: ignore[attr-defined]
    else:
        _ctypes.dlclose(handle)  # type: ignore[attr-defined]


@dataclass
class ExtensionHandle:
    """An opened extension with its entry point resolved.

    Only valid inside ``ExtensionLoader.acquire``; the library is released
    when that block exits.
    """

    name: str
    path: str
    library: Any
    entry: Callable[[], None]
    invoked: bool = False

    def invoke(self) -> None:
        if self.invoked:
            raise TBExtensionError(f"Entry point of {self.path} was already invoked", kind=EXTENSION_FAILED)
        self.invoked = True
        try:
            self.entry()
        except OSError as exc:
            # ctypes reports native faults it can trap (e.g. SEH on Windows) as OSError.
            raise TBExtensionError(f"Extension {self.path} failed: {exc}", kind=EXTENSION_FAILED) from exc


def split_search_paths(entries: Sequence[str], environ: Optional[Mapping[str, str]] = None) -> List[str]:
    """Expand ``os.pathsep``-joined entries into absolute search directories.

    ``entries`` come first, followed by the directories named in
    ``TAEBAEK_EXT_PATH``. Empty pieces and repeats are dropped.
    """
    env = os.environ if environ is None else environ
    pieces: List[str] = []
    for entry in list(entries) + [env.get(SEARCH_PATH_ENV, "")]:
        pieces.extend(entry.split(os.pathsep))
    directories: List[str] = []
    for piece in pieces:
        piece = piece.strip()
        if not piece:
            continue
        directory = os.path.abspath(os.path.expanduser(piece))
        if directory not in directories:
            directories.append(directory)
    return directories


class ExtensionLoader:
    def __init__(
        self,
        *,
        search_paths: Sequence[str] = (),
        entry_point: str = EXTENSION_ENTRY_POINT,
        suffix: Optional[str] = None,
        isolate: bool = False,
        timeout: Optional[float] = None,
        opener: Callable[[str], Any] = open_library,
        releaser: Callable[[Any], None] = release_library,
    ) -> None:
        self.search_paths = list(search_paths)
        self.entry_point = entry_point
        self.suffix = platform_suffix() if suffix is None else suffix
        self.isolate = isolate
        self.timeout = timeout
        self._opener = opener
        self._releaser = releaser

    def module_file(self, name: str) -> str:
        return f"{name}{self.suffix}"

    def resolve(self, name: str, base_dir: Optional[str] = None) -> str:
        """Return the path handed to the platform loader.

        Configured search directories win, then ``base_dir``. Otherwise the
        bare file name is returned so the platform search path applies.
        """
        filename = self.module_file(name)
        directories = list(self.search_paths)
        if base_dir is not None:
            directories.append(base_dir)
        for directory in directories:
            candidate = os.path.join(directory, filename)
            if os.path.isfile(candidate):
                return os.path.abspath(candidate)
        return filename

    @contextmanager
    def acquire(self, name: str, base_dir: Optional[str] = None) -> Iterator[ExtensionHandle]:
        path = self.resolve(name, base_dir)
        try:
            library = self._opener(path)
        except OSError as exc:
            raise TBExtensionError(f"Cannot load extension '{path}': {exc}", kind=EXTENSION_NOT_FOUND) from exc
        try:
            try:
                entry = getattr(library, self.entry_point)
            except AttributeError:
                raise TBExtensionError(
                    f"Entry point '{self.entry_point}' not found in {path}",
                    kind=ENTRY_POINT_MISSING,
                ) from None
            entry.restype = None
            entry.argtypes = []
            yield ExtensionHandle(name=name, path=path, library=library, entry=entry)
        finally:
            self._releaser(library)

    def load(self, name: str, base_dir: Optional[str] = None) -> str:
        """Open ``name``, invoke its entry point once and release it.

        Returns the path the module was loaded from.
        """
        if self.isolate:
            return self._load_isolated(self.resolve(name, base_dir))
        with self.acquire(name, base_dir) as handle:
            handle.invoke()
        return handle.path

    def _load_isolated(self, path: str) -> str:
        try:
            completed = subprocess.run(
                [sys.executable, "-c", _ISOLATED_RUNNER, path, self.entry_point],
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise TBExtensionError(
                f"Extension {path} did not finish within {self.timeout} seconds",
                kind=EXTENSION_FAILED,
            ) from None
        code = completed.returncode
        detail = (completed.stderr or "").strip()
        if code == 0:
            return path
        if code == _EXIT_NOT_FOUND:
            raise TBExtensionError(f"Cannot load extension '{path}': {detail}", kind=EXTENSION_NOT_FOUND)
        if code == _EXIT_ENTRY_MISSING:
            raise TBExtensionError(f"Entry point '{self.entry_point}' not found in {path}", kind=ENTRY_POINT_MISSING)
        if code < 0:
            raise TBExtensionError(f"Extension {path} was terminated by signal {-code}", kind=EXTENSION_FAILED)
        message = f"Extension {path} failed with exit status {code}"
        if detail:
            message += f": {detail}"
        raise TBExtensionError(message, kind=EXTENSION_FAILED)
