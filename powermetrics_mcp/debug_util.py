import os, logging, sys

logger = logging.getLogger("powermetrics_mcp")

def _ensure_logger():
    """Attach a basic StreamHandler if none present.

    Done lazily so importing the package never overrides the host
    application's logging configuration. Only when a debug message is
    actually emitted (DEBUG_VERBOSE=1) do we make sure a handler exists.
    """
    if logger.handlers:
        return
    logger.setLevel(logging.INFO)
    h = logging.StreamHandler(stream=sys.stdout)
    fmt = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    h.setFormatter(fmt)
    logger.addHandler(h)

def dbg(msg: str):
    """Emit a debug info line when DEBUG_VERBOSE=1.

    Export DEBUG_VERBOSE=1 before starting the CLI or the MCP server. Line
    level parser tracing is separately gated by DEBUG_POWERMETRICS_PARSER=1
    since it is very chatty on a live stream.
    """
    if os.environ.get('DEBUG_VERBOSE') == '1':
        _ensure_logger()
        logger.info('[debug] %s', msg)

def trace(msg: str):
    """Per-line parser tracing, enabled with DEBUG_POWERMETRICS_PARSER=1."""
    if os.environ.get('DEBUG_POWERMETRICS_PARSER') == '1':
        _ensure_logger()
        logger.info('[parser] %s', msg)
