"""
Typed error conditions raised by the voting engine.

Route handlers translate these into HTTP responses (see ``app.py``);
the engine itself never retries or swallows them.
"""


class VoteEngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code


class NotFound(VoteEngineError):
    code = "not_found"
    status_code = 404


class PostNotFound(NotFound):
    code = "post_not_found"

    def __init__(self, post_id: int):
        super().__init__(f"Post {post_id} not found")
        self.post_id = post_id


class VoteNotFound(NotFound):
    code = "vote_not_found"

    def __init__(self, post_id: int, voter_id: str):
        super().__init__(f"No vote by {voter_id} on post {post_id}")
        self.post_id = post_id
        self.voter_id = voter_id


class VoteConflict(VoteEngineError):
    """A concurrent write on the same vote or aggregate won the race.

    Safe to retry the whole submission.
    """

    code = "conflict"
    status_code = 409


class StoreUnavailable(VoteEngineError):
    """Transient failure talking to the backing store."""

    code = "store_unavailable"
    status_code = 503


class InvalidCategory(VoteEngineError):
    code = "invalid_category"
    status_code = 422

    def __init__(self, value):
        super().__init__(
            f"Invalid vote category {value!r}. Must be one of: trusted, suspicious, untrusted"
        )
        self.value = value
