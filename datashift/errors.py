class ShiftConfigurationError(ValueError):
    pass


class ShiftFailedError(RuntimeError):
    pass


class SkipRecord(Exception):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "skipped")
        self.reason = reason


class RecordsNotFoundError(LookupError):
    def __init__(self, model: type, ids: list[object], missing: list[object]) -> None:
        self.model = model
        self.ids = ids
        self.missing = missing
        super().__init__(f"Expected {model.__name__} with ids {ids!r}, but missing: {missing!r}")


class ExternalRequestNotAllowedError(RuntimeError):
    """Raised when a dry run makes an outbound HTTP request to a host nobody allowed."""

    def __init__(self, attempted_host: str | None = None) -> None:
        self.attempted_host = attempted_host
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        host = (self.attempted_host or "").strip()
        if not host:
            return (
                "Dry run blocked an outbound HTTP request.\n\n"
                "To allow specific hosts during dry run, declare them on your shift class:\n\n"
                '    class MyShift(Shift, allow_external_requests=["host.example.com"]):  # or a compiled regex\n\n'
                "Or set ShifterConfig.allow_external_requests (DATASHIFT_ALLOW_EXTERNAL_REQUESTS)."
            )
        return (
            f"Dry run blocked an outbound HTTP request to {host}.\n\n"
            "To allow this host during dry run, declare it on your shift class:\n\n"
            f'    class MyShift(Shift, allow_external_requests=["{host}"]):\n\n'
            "Or set ShifterConfig.allow_external_requests (DATASHIFT_ALLOW_EXTERNAL_REQUESTS)."
        )
