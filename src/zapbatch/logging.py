import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def setup_logging(*, level: int = logging.INFO) -> None:
    """
    Route zapbatch structlog events through the stdlib ``zapbatch`` logger.

    Parameters
    ----------
    level : int, optional
        Level of the ``zapbatch`` logger. Relay and batch events are emitted
        at debug level.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    logging.getLogger("zapbatch").setLevel(level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**context) -> Iterator[None]:
    """Bind ``context`` (e.g. ``view_id``) for the block, keeping outer bindings."""
    bound = structlog.contextvars.get_contextvars()
    missing = {key: value for key, value in context.items() if key not in bound}
    if not missing:
        yield
        return
    with structlog.contextvars.bound_contextvars(**missing):
        yield
