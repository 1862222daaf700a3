"""Risk-monitoring and flash-loan liquidation engine for Vesu lending pools."""

__version__ = "0.1.0"
