"""Exceptions raised by the MQTT device simulator."""


class SimulatorError(Exception):
    """Base class for simulator errors."""


class ConfigError(SimulatorError):
    """Configuration is invalid or TLS material cannot be loaded. Fatal at startup."""


class AddressAllocationError(SimulatorError):
    """No local bind address can be computed for a client."""


class ConnectRejected(SimulatorError):
    """The broker answered the connect handshake with a failure reason code."""

    def __init__(self, client_id: str, reason):
        super().__init__(f"Client {client_id} rejected by broker: {reason}")
        self.client_id = client_id
        self.reason = reason


class TransportFailure(SimulatorError):
    """The transport dropped a connection or could not deliver a publish."""
