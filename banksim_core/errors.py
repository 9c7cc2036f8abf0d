"""
Errors raised by the ledger bootstrap and the transaction gateway.
"""

from __future__ import annotations

from typing import Sequence


class ProgramLoadError(Exception):
    """A program could not be loaded into a fresh ledger. Fatal to setup."""


class BanksTransactionError(Exception):
    """A transaction the ledger rejected.

    ``result`` is the ledger's raw result string; ``logs`` are the program
    log lines recorded while executing it, if any.  Both end up in the
    message so callers can match on either.
    """

    def __init__(self, result: str, logs: Sequence[str] = ()):
        self.result = result
        self.logs = list(logs)
        message = result
        if self.logs:
            message += "\n" + "\n".join(self.logs)
        super().__init__(message)
