"""
Compact summaries of exceptions raised inside worker threads, keeping only the frames of this package.
"""
import linecache
import traceback
import types
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class FrameInfo:
    filename: str
    lineno: int
    function: str
    code_line: Optional[str] = None


def extract_relevant_frames(tb: Optional[types.TracebackType], max_frames: int = 10,
                            package_name: str = "cryoREC") -> List[FrameInfo]:
    """Walk a traceback and keep the frames that belong to `package_name` (or the last frame if none does)."""
    frames = []
    while tb is not None:
        code = tb.tb_frame.f_code
        line = linecache.getline(code.co_filename, tb.tb_lineno).strip() or None
        frames.append(FrameInfo(code.co_filename, tb.tb_lineno, code.co_name, line))
        tb = tb.tb_next
    own = [f for f in frames if package_name in f.filename]
    if own:
        frames = own
    elif frames:
        frames = frames[-1:]
    return frames[-max_frames:]


def format_exception_summary(exc: BaseException, context: str = "", max_frames: int = 5) -> str:
    """
    One block of text with the exception type and message, followed by the innermost relevant frames.

    :param exc: The exception
    :param context: Free text prepended to the summary, e.g. the worker id
    :param max_frames: Maximum number of frames listed
    """
    header = f"{type(exc).__name__}: {exc}"
    if context:
        header = f"{context}: {header}"
    lines = [header]
    for f in extract_relevant_frames(exc.__traceback__, max_frames=max_frames):
        lines.append(f"  at {f.filename}:{f.lineno} in {f.function}")
        if f.code_line:
            lines.append(f"      {f.code_line}")
    return "\n".join(lines)


def format_full_traceback(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
