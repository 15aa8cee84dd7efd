class RelayError(Exception):
    kind = "RELAY_ERROR"

    def __init__(self, message: str = "", *, kind: str | None = None) -> None:
        super().__init__(message or self.kind)
        if kind is not None:
            self.kind = kind


class MissingCredentialConfig(RelayError):
    kind = "MISSING_CREDENTIAL_CONFIG"


class CredentialExchangeFailure(RelayError):
    kind = "CREDENTIAL_EXCHANGE_FAILURE"


class CatalogFetchFailure(RelayError):
    kind = "CATALOG_FETCH_FAILURE"


class EmptySubscriptionSet(RelayError):
    kind = "EMPTY_SUBSCRIPTION_SET"


class StreamDisconnect(RelayError):
    kind = "STREAM_DISCONNECT"


class StreamGivesUpReconnecting(RelayError):
    kind = "STREAM_GIVES_UP_RECONNECTING"


TIMEOUT = "TIMEOUT"
