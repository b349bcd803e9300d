"""Simulates large populations of MQTT devices for broker load testing."""

from .config import PoolConfig, SimulatorConfig, load_config
from .credentials import ClientCredential
from .errors import (AddressAllocationError, ConfigError, ConnectRejected, SimulatorError,
                     TransportFailure)
from .session import CHILD_DEVICE_TOPIC, ClientSession
from .simulator import MQTTSimulator

__version__ = "1.0.0"

__all__ = [
    "AddressAllocationError",
    "CHILD_DEVICE_TOPIC",
    "ClientCredential",
    "ClientSession",
    "ConfigError",
    "ConnectRejected",
    "MQTTSimulator",
    "PoolConfig",
    "SimulatorConfig",
    "SimulatorError",
    "TransportFailure",
    "load_config",
]
