# -*- coding: utf-8 -*-
"""
errors.py - Exception types shared across PyStove components
"""


class PyStoveError(Exception):
    """Base class for PyStove errors."""


class StorageUnavailable(PyStoveError):
    """The persistence file could not be read or written, or a transaction
    gave up after repeated conflicts."""


class ValidationFailed(PyStoveError):
    """A write was rejected by validation; nothing was persisted."""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class CorruptRecord(PyStoveError):
    """A persisted record is missing a required field."""

    def __init__(self, field: str):
        super().__init__(f"record missing or invalid field '{field}'")
        self.field = field
