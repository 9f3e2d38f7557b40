import logging
import sys
from pathlib import Path

from signflow.core.config import settings

_handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
if settings.log_file:
    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=_handlers,
)

logger = logging.getLogger("signflow")
