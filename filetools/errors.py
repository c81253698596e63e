class FatalError(Exception):
    """
    Base class for systemic errors that abort a whole invocation.

    Classifiable per-job failures are never raised; they are returned as
    FailureReason values and the job directory is moved aside.
    """
    pass


class ClusterDirError(FatalError):
    pass


class JobNameError(FatalError):
    pass


class PromotionError(FatalError):
    pass


class CatalogError(FatalError):
    pass


class CatalogConflictError(CatalogError):
    """The record being declared already exists in the catalog."""
    pass


class CatalogBadRequestError(CatalogError):
    """The catalog rejected the request as malformed. Never retried."""
    pass


class ArchiveError(FatalError):
    pass


class TapeLookupError(FatalError):
    pass
