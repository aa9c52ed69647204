"""
Failure categories for the relay.

Payload errors drop a single frame. Transport errors end a single connection.
Only BindFailure stops the process.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class MalformedPayload(RelayError):
    """Text frame that is not a JSON object."""


class UnsupportedPayload(RelayError):
    """Binary frame handed to structured decoding."""


class TransportFailure(RelayError):
    def __init__(self, connection_id, cause=None):
        super().__init__(f'transport failure on connection {connection_id}: {cause}')
        self.connection_id = connection_id
        self.cause = cause


class BindFailure(RelayError):
    def __init__(self, host, port, cause=None):
        super().__init__(f'cannot listen on {host}:{port}: {cause}')
        self.host = host
        self.port = port
