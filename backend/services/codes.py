from __future__ import annotations

import secrets

from backend.app.db.base import utcnow

LOAN_PREFIX = "EMP"
TRANSFER_PREFIX = "TRF"
ENTRY_PREFIX = "ENT"


def generate_code(prefix: str) -> str:
    # horodatage + suffixe aléatoire : unique même pour deux appels dans la même seconde
    return f"{prefix}{utcnow():%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}"
