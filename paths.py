import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from extensions import content_type_for

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    INDEX = "index"
    FILE = "file"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ResolvedPath:
    outcome: Outcome
    relative: str | None = None


@dataclass
class ResolvedResource:
    """What a request target maps to.

    For FILE the caller owns ``fp``; use the resource as a context manager
    or call ``close``.
    """

    outcome: Outcome
    fp: BinaryIO | None = None
    content_type: str | None = None
    length: int = 0

    def close(self):
        fp, self.fp = self.fp, None
        if fp is not None:
            fp.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


FORBIDDEN = ResolvedPath(Outcome.FORBIDDEN)
INDEX = ResolvedPath(Outcome.INDEX)


def file_extension(target: str) -> str:
    dot = target.rfind(".")
    if dot <= 0:
        return ""
    return target[dot + 1:]


def is_safe_path(base: Path, target: Path) -> bool:
    try:
        return target.resolve().is_relative_to(base.resolve())
    except (OSError, RuntimeError, ValueError):
        return False


def resolve_target(target: str, root_dir: Path, harden: bool = True) -> ResolvedPath:
    """Map a request target onto the document root.

    A target whose second character is "." is always refused; this stops
    "/../x" and "/./x" but not "/a/../../x". With ``harden`` the joined path is
    also canonicalised and must stay below ``root_dir``.
    """
    if not target.startswith("/"):
        return FORBIDDEN
    if target[1:2] == ".":
        return FORBIDDEN
    if target == "/":
        return INDEX

    relative = target[1:]
    if harden and not is_safe_path(root_dir, root_dir / relative):
        logger.info(f"Refusing {target!r}: resolves outside {root_dir}")
        return FORBIDDEN
    return ResolvedPath(Outcome.FILE, relative)


def measure_length(fp: BinaryIO) -> int:
    fp.seek(0, os.SEEK_END)
    size = fp.tell()
    fp.seek(0)
    return size


def open_resource(target: str, root_dir: Path, harden: bool = True) -> ResolvedResource:
    resolved = resolve_target(target, root_dir, harden)
    if resolved.outcome is not Outcome.FILE:
        return ResolvedResource(resolved.outcome)

    ctype = content_type_for(file_extension(target))
    if ctype is None:
        return ResolvedResource(Outcome.FORBIDDEN)

    try:
        fp = open(root_dir / resolved.relative, "rb")
    except (OSError, ValueError) as e:
        logger.debug(f"Cannot open {resolved.relative!r}: {e}")
        return ResolvedResource(Outcome.NOT_FOUND)

    try:
        length = measure_length(fp)
    except OSError as e:
        logger.warning(f"Cannot measure {resolved.relative!r}: {e}")
        length = -1
    if length < 0:
        logger.warning(f"Bad length for {resolved.relative!r}")
        fp.close()
        return ResolvedResource(Outcome.FORBIDDEN)
    return ResolvedResource(Outcome.FILE, fp, ctype, length)
