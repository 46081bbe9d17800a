"""Mock of the legacy v1.1 ``statuses/filter`` streaming endpoint."""

__version__ = "1.0.0"
