"""Exceptions raised by xui-sync.

Two families exist. ``MutationRejected`` subclasses are validation
failures: they are raised before anything is written and before the
engine is contacted. ``EngineError`` is a failed call on the engine
control channel; it never leaves the live-sync adapter.
"""


class XUISyncError(Exception):
    """Base class for every error raised by this package."""


class MutationRejected(XUISyncError, ValueError):
    """A mutation was refused; nothing has been persisted."""


class PortConflict(MutationRejected):
    """Another inbound already binds the same listen address and port."""

    def __init__(self, listen: str, port: int):
        self.listen = listen
        self.port = port
        super().__init__(f"Port already exists: {port}")


class DuplicateEmail(MutationRejected):
    """A client email is already used by another client."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Duplicate email: {email}")


class EmptyIdentifier(MutationRejected):
    """A client lacks its protocol identifier (id, password or email)."""

    def __init__(self, protocol: str, field: str):
        self.protocol = protocol
        self.field = field
        super().__init__(f"empty client ID: {protocol} clients need a non-empty '{field}'")


class DuplicateIdentifier(MutationRejected):
    """Two clients of one inbound share an identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Duplicate client ID: {identifier}")


class LastClientError(MutationRejected):
    """Removing the client would leave the inbound without clients."""

    def __init__(self, inbound_id: int):
        self.inbound_id = inbound_id
        super().__init__(f"no client remained in inbound {inbound_id}")


class ClientNotFound(MutationRejected):
    def __init__(self, inbound_id: int, client_id: str):
        self.inbound_id = inbound_id
        self.client_id = client_id
        super().__init__(f"client {client_id} not found in inbound {inbound_id}")


class InboundNotFound(MutationRejected):
    def __init__(self, inbound_id: int):
        self.inbound_id = inbound_id
        super().__init__(f"inbound {inbound_id} not found")


class DecodeError(MutationRejected):
    """An inbound settings document could not be decoded."""

    def __init__(self, message: str):
        super().__init__(message)


class EngineError(XUISyncError):
    """A call on the engine control channel failed."""

    def __init__(self, message: str):
        super().__init__(message)
