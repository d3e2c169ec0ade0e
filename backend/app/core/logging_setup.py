from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure le logging racine une seule fois (appelé depuis main)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # SQLAlchemy est très bavard en DEBUG, on le garde au niveau WARNING
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
