"""
Exception types raised while parsing, resolving, decrypting and merging.
"""


class SeleneError(Exception):
    """Base class for every error raised by this package."""


class ParseError(SeleneError, ValueError):
    """
    Malformed playlist text.
    Carries the 1-based line number where parsing stopped, when known.
    """

    def __init__(self, message: str, line_number: int = None):
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class MissingHeader(ParseError):
    pass


class MalformedDirective(ParseError):
    pass


class MalformedAttributeList(ParseError):
    pass


class UnexpectedEof(ParseError):
    pass


class ClassificationError(ParseError):
    """Playlist lists both (or neither) variants and segments."""


class DecryptError(SeleneError, ValueError):
    pass


class InvalidCiphertextLength(DecryptError):
    pass


class InvalidPadding(DecryptError):
    pass


class ResolveError(SeleneError, ValueError):
    pass


class MissingKeyInfo(ResolveError):
    pass


class InvalidHexEncoding(ResolveError):
    pass


class InvalidBaseUrl(ResolveError):
    pass


class VariantIndexOutOfRange(ResolveError):
    pass


class PlaylistAccessDenied(ResolveError):
    pass


class PipelineError(SeleneError, RuntimeError):
    """
    First fatal fetch or decrypt failure of a download job.
    The original exception is chained as __cause__.
    """

    def __init__(self, index: int, url: str, reason: str):
        super().__init__(f"Segment {index} ({url}) failed: {reason}")
        self.index = index
        self.url = url
