from __future__ import annotations

import logging

from caseregistry.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install one stream handler on the root logger; repeated app factories must not stack handlers.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(handler, "_caseregistry", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._caseregistry = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # Keep SQL echo out of application logs; bound parameters can carry ciphertext.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
