"""Exception types shared by the store, catalog client and service layer."""


class CatalogError(RuntimeError):
    """An essential catalog call failed after retries."""


class NotFoundError(LookupError):
    """The referenced rating or watchlist entry does not exist."""


class AlreadyExistsError(ValueError):
    """The mutation would duplicate state that is already present."""


class TransactionError(RuntimeError):
    """A multi-step store mutation was aborted and rolled back."""
