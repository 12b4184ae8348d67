"""Error taxonomy for link resolution, creation and analytics recording.

Each exception carries the HTTP status the router answers with, so the
mapping lives in one place::

    NotFound               404  unknown short code
    Expired / Inactive     410  link exists but is not resolvable
    AliasTaken/DuplicateKey 409 unique constraint lost
    InvalidInput           400  malformed URL, alias or expiry
    GenerationExhausted    503  no free random code after N attempts
    RateLimited            429  client exceeded its shorten budget
    DependencyUnavailable  503  cache or store timed out / unreachable
"""

__all__ = [
    "LinkError",
    "NotFound",
    "LinkGone",
    "Expired",
    "Inactive",
    "DuplicateKey",
    "AliasTaken",
    "InvalidInput",
    "GenerationExhausted",
    "DependencyUnavailable",
    "RateLimited",
]


class LinkError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(LinkError):
    status_code = 404


class LinkGone(LinkError):
    status_code = 410


class Expired(LinkGone):
    pass


class Inactive(LinkGone):
    pass


class DuplicateKey(LinkError):
    status_code = 409


class AliasTaken(DuplicateKey):
    pass


class InvalidInput(LinkError):
    status_code = 400


class GenerationExhausted(LinkError):
    status_code = 503


class DependencyUnavailable(LinkError):
    """Cache or store could not answer in time.

    ``dependency`` names which one ("cache" or "store").
    """

    status_code = 503

    def __init__(self, dependency: str, message: str) -> None:
        super().__init__(message)
        self.dependency = dependency


class RateLimited(LinkError):
    status_code = 429

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after
