"""
machpay: command-line tooling for the MachPay gateway.

Installs the gateway binary from its release registry and supervises it
as a single foreground or detached process.
"""

__version__ = "0.1.0"
