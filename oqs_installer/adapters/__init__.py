"""
Adapters — the only layer that touches processes and the filesystem directly.

    from oqs_installer.adapters.shell.command import CommandRunner
"""
