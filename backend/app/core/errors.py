"""
Taxonomie des erreurs du moteur de stock.

Aucune dépendance HTTP ici : la traduction en codes de statut est faite
par backend.app.api.error_handlers.
"""

from __future__ import annotations


class StockError(Exception):
    code = "stock_error"

    def __init__(self, message: str, *, code: str | None = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class ValidationError(StockError):
    """Entrée invalide : quantité nulle, origine == destination, etc."""

    code = "validation_error"


class NotFoundError(StockError):
    """Produit / local / prêt / transfert / collaborateur absent ou inactif."""

    code = "not_found"


class InsufficientStockError(StockError):
    code = "insufficient_stock"

    def __init__(
        self,
        message: str,
        *,
        product_id: int | None = None,
        requested: int | None = None,
        available: int | None = None,
    ):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(message)


class InvalidStateError(StockError):
    """Transition refusée par la machine à états."""

    code = "invalid_state"


class ConcurrencyError(StockError):
    """Conflit de verrou / timeout. Seule erreur à rejouer côté appelant."""

    code = "concurrency_conflict"


class PermissionDeniedError(StockError):
    code = "permission_denied"
