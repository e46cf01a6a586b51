class GrtcError(Exception):
    """Base class for every error raised by grtc."""


class ConfigError(GrtcError):
    pass


class StoreUnavailable(GrtcError):
    """The rendezvous store could not be reached or answered badly."""


class PublishError(GrtcError):
    """Publishing the local signal failed. Fatal to the session."""


class ConnectTimeout(GrtcError):
    """The transport did not connect within the configured bound."""


class KeyGenError(GrtcError):
    pass


class TransportError(GrtcError):
    """Unrecoverable failure reported by the transport."""


class MalformedMessage(GrtcError):
    """An incoming message or signal could not be parsed. Never fatal."""


class NotReady(GrtcError):
    """Application data was sent before the security handshake finished."""
