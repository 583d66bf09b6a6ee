from __future__ import annotations


class QuoteStreamError(Exception):
    """Base class for pipeline errors. Messages are upper-snake reason codes."""


class DecodeError(QuoteStreamError, ValueError):
    pass


class MalformedQuoteError(DecodeError):
    pass


class FeedError(QuoteStreamError):
    pass


class FeedConfigError(FeedError):
    """The subscription itself is invalid; reconnecting cannot help."""


class SinkError(QuoteStreamError):
    pass


class ConfigError(QuoteStreamError):
    pass


class ChannelClosedError(QuoteStreamError):
    pass
