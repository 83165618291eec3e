"""
Local package for the machpay CLI.

Holds everything that runs on the user's machine: the installer
(`external`), the process supervisor (`supervisor`), the interactive
console (`console`) and the persisted configuration and credentials.
"""
