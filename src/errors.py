"""
errors.py

Exception types raised by the obfuscation protocol.
"""


class ObfuscationError(Exception):
    pass


class ConfigurationError(ObfuscationError):
    """Incomplete or overlapping partition, bad pairing or missing phase timing."""
    pass


class FormatError(ObfuscationError):
    """A wire payload that does not follow the count-prefixed grammar."""
    pass


class RangeError(ObfuscationError):
    """A reading or mask value outside its configured bounds."""

    def __init__(self, what, value, low, high):
        super().__init__(f"{what} {value} outside [{low}, {high}]")
        self.what = what
        self.value = value
        self.low = low
        self.high = high
