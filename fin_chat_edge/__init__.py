"""Network topology and traffic path provisioning for the fin-chat service."""

__version__ = "0.1.0"
