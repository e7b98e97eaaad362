"""Progress logging of pgshape through loguru.

pgshape owns a single stdout handler. Progress lines are laid out in
columns: the name of the step, right-aligned, then its fields::

     Iteration | 3 / 100
      Subspace | step 0.5
            LB |   Affine |  (+) -1234.5
"""
import sys

from loguru import logger

FORMAT = "<level>{level: <8}</level> | {message} - <cyan>{name}</cyan>:<cyan>{function}</cyan>"  # noqa E501
STEP_WIDTH = 10

# Drop the default loguru handler, keep track of ours
logger.remove()
_handler_id = logger.add(sys.stdout, level="INFO", colorize=True, format=FORMAT)


def get_logger():
    return logger


def _coerce_level(verbose: str | int | bool | None) -> str | int:
    if verbose is None:
        return "INFO"
    if isinstance(verbose, bool):
        return "INFO" if verbose else "WARNING"
    if isinstance(verbose, str):
        return verbose.upper()
    return verbose


def set_log_level(verbose: str | int | bool | None) -> None:
    """Set the level of the pgshape handler.

    Handlers added to loguru by the caller are left alone.

    Parameters
    ----------
    verbose : str or int or bool or None, default=None
        ``"DEBUG"``, ``"INFO"``, ``"WARNING"``, ``"ERROR"`` or ``"CRITICAL"``
        (any case), or the equivalent ``logging`` integer. ``True`` is the
        same as ``"INFO"`` and ``False`` as ``"WARNING"``, which hides the
        progress of a fit. ``None`` means ``"INFO"``.
    """
    global _handler_id
    level = _coerce_level(verbose)
    logger.remove(_handler_id)
    _handler_id = logger.add(sys.stdout, level=level, colorize=True, format=FORMAT)


def log(msg: str, level: str = "info", color: str = None, weight: str = None) -> None:
    """Log a message with loguru color markup.

    Example: log("Converged", level="info", color="green", weight="bold")
    """
    if color:
        msg = f"<{color}>{msg}</{color}>"
    if weight == "bold":
        msg = f"<lvl>{msg}</lvl>"
    # depth=1 reports the caller, not this helper
    getattr(logger.opt(colors=True, depth=1), level)(msg)


def log_step(step: str, *fields, level: str = "info", color: str = None, weight: str = None) -> None:
    """Log one progress line: ``step`` in the first column, then ``fields``.

    Example: log_step("Lambda", "12.5") writes ``    Lambda | 12.5``.
    """
    msg = " | ".join([f"{step:>{STEP_WIDTH}}", *(str(f) for f in fields)])
    if color:
        msg = f"<{color}>{msg}</{color}>"
    if weight == "bold":
        msg = f"<lvl>{msg}</lvl>"
    getattr(logger.opt(colors=True, depth=1), level)(msg)
