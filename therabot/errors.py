"""Error taxonomy for the dialogue engine.

Every error carries an HTTP status code so the API layer can translate it
with a single exception handler. None of these are retried internally:
they are programming or data errors surfaced verbatim to the caller.

    NotFound           404  unknown node / edge / session / scenario / condition
    InvalidChoice      400  edge does not leave the session's current node
    InvalidNodeShape   400  node metadata or edge cardinality is wrong
    UnknownTarget      400  choice points at a node outside the scenario
    CannotDeleteRoot   409  node is still the scenario's root
    AlreadySubmitted   409  outcome was already recorded for the session
    SessionEnded       409  choice sent to a session that reached an end node
    SessionNotEnded    409  outcome submitted before the session ended
    ScenarioNotPublished 409 session started on an unpublished scenario
    MalformedGraph     500  traversal hit a structurally broken node
    GraphCycleError    500  automatic nodes looped past the step cap
    StorageError       500  unreadable or unwritable data file
"""


class TherabotError(Exception):
    status_code = 500


class NotFound(TherabotError):
    status_code = 404


class InvalidChoice(TherabotError):
    status_code = 400


class InvalidNodeShape(TherabotError):
    status_code = 400

    def __init__(self, node_id: str | None, message: str) -> None:
        self.node_id = node_id
        prefix = f"Node {node_id}: " if node_id else ""
        super().__init__(f"{prefix}{message}")


class UnknownTarget(TherabotError):
    status_code = 400


class CannotDeleteRoot(TherabotError):
    status_code = 409


class AlreadySubmitted(TherabotError):
    status_code = 409


class SessionEnded(TherabotError):
    status_code = 409


class SessionNotEnded(TherabotError):
    status_code = 409


class ScenarioNotPublished(TherabotError):
    status_code = 409


class MalformedGraph(TherabotError):
    """Traversal reached a node whose edges break the registry rules."""

    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node {node_id}: {message}")


class GraphCycleError(TherabotError):
    """Automatic nodes kept routing to each other past the step cap."""


class StorageError(TherabotError):
    pass
