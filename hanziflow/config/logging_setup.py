import logging
from typing import Optional

from .hanziflow_config import HanziflowConfig

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config: Optional[HanziflowConfig] = None, level: Optional[str] = None) -> None:
    """Configure root logging from the `logging` config section.

    An explicit level (e.g. from a CLI flag) wins over the configured one.
    """
    logging_config = (config or HanziflowConfig()).get_logging_config()
    level_name = (level or logging_config.get('level') or 'INFO').upper()

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=logging_config.get('format') or DEFAULT_FORMAT
    )
    # The openai client is chatty at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)
