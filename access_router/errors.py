from __future__ import annotations


class RouterError(Exception):
    error_code = "ROUTER_ERROR"
    status_code = 500


class ConfigError(RouterError):
    error_code = "MISCONFIGURED"
    status_code = 500


class UnknownEnvironment(RouterError):
    error_code = "UNKNOWN_ENVIRONMENT"
    status_code = 400

    def __init__(self, label: str, registered: list[str] | tuple[str, ...] = ()) -> None:
        self.label = label
        self.registered = list(registered)
        known = ", ".join(self.registered) or "none"
        super().__init__(f"unknown environment {label!r} (registered: {known})")


class TrustDenied(RouterError):
    error_code = "TRUST_DENIED"
    status_code = 403


class Expired(RouterError):
    error_code = "TOKEN_EXPIRED"
    status_code = 401


class ProvisioningConflict(RouterError):
    error_code = "PROVISIONING_CONFLICT"
    status_code = 409

    def __init__(self, message: str, *, key: str = "", guidance: str = "") -> None:
        self.key = key
        self.guidance = guidance or (
            "another run changed this record; inspect it, resolve drift manually, "
            "then start a fresh run"
        )
        super().__init__(f"{message}; {self.guidance}")


class InvalidTransition(RouterError):
    error_code = "INVALID_TRANSITION"
    status_code = 409


class FactoryStepFailed(RouterError):
    error_code = "FACTORY_STEP_FAILED"
    status_code = 500

    def __init__(self, environment: str, state: str, step: str, cause: Exception) -> None:
        self.environment = environment
        self.state = state
        self.step = step
        self.cause = cause
        super().__init__(
            f"account factory step {step!r} failed for {environment!r}; "
            f"record left at {state!r} for manual remediation: {cause}"
        )
