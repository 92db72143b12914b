"""oqs-ssh-installer — provision a quantum-safe OpenSSH fork."""

__version__ = "0.1.0"
