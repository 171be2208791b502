import logging

from chatlytics.config import settings

logger = logging.getLogger("chatlytics")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    logger.addHandler(_handler)

logger.setLevel(settings.log_level.upper())
