import logging

from meeting_pipeline.constant import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # aiortc/aioice are chatty at INFO during ICE negotiation
    for name in ("aioice", "aiortc"):
        logging.getLogger(name).setLevel(logging.WARNING)
