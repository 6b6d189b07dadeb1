class PakError(Exception):
    """Base class for uepak-specific errors."""


class NotFound(PakError, KeyError):
    """No entry with the requested path."""

    def __str__(self) -> str:
        return Exception.__str__(self)


# Index/footer related
class CorruptIndex(PakError):
    pass


class BadMagic(CorruptIndex):
    pass


class UnknownVersion(CorruptIndex):
    pass


class MissingKey(PakError):
    pass


class UnsupportedMethod(PakError):
    pass


class DecodeFailed(PakError):
    pass


class IoFailure(PakError):
    pass
