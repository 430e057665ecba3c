from typing import Optional


class WatcherError(Exception):
    pass


class ConfigError(WatcherError):
    pass


class RunCancelled(WatcherError):
    """Raised at a checkpoint once the run-token captured at the start of a tick is stale."""


class RpcError(WatcherError):
    def __init__(self, label: str, error: BaseException, attempts: int = 1):
        super().__init__(f"{label}: {error}")
        self.label = label
        self.error = error
        self.attempts = attempts

    @property
    def message(self) -> str:
        return str(self.error)


class RpcRetryExhausted(RpcError):
    def __init__(self, label: str, error: BaseException, attempts: int):
        super().__init__(label, error, attempts)
        self.args = (f"rpc retries exhausted after {attempts} attempts: {label}: {error}",)


def rpc_error_message(exc: Optional[BaseException]) -> str:
    if exc is None:
        return ""
    if isinstance(exc, RpcError):
        return exc.message
    return str(exc)
