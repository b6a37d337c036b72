# errors.py
from __future__ import annotations


class CliError(Exception):
    """Fatal condition: the CLI reports ``message`` and exits with ``exit_code``."""

    exit_code = 1

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigurationError(CliError):
    exit_code = 1


class UsageError(CliError):
    exit_code = 2


class InputError(CliError):
    # 3: prompt file not found, 4: prompt file empty
    exit_code = 13


class StorageCorrupt(CliError):
    exit_code = 5


class StorageWriteError(CliError):
    exit_code = 6


class ReplayError(CliError):
    exit_code = 8


class TransportError(CliError):
    exit_code = 9


class ApiError(CliError):
    # 10 when the stream reports a terminal reason other than stop/function_call
    exit_code = 9


class UnsupportedApi(CliError):
    exit_code = 12
