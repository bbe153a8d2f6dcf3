"""Stream economy services."""

__all__: list[str] = []
