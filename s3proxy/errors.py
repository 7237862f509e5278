from __future__ import annotations


class UserException(Exception):  # noqa: N818
    """Raised for caller mistakes: bad construction parameters or lifecycle misuse."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.args[0]}"
