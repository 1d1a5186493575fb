"""Number formatting utilities for console output."""

from typing import Optional


def format_number(value: float, decimals: int = 2) -> str:
    """Format a number with comma separators.

    Args:
        value: The numeric value to format.
        decimals: Number of decimal places.

    Returns:
        Formatted string (e.g., "1,234.57").
    """
    return f"{value:,.{decimals}f}"


def format_quantity(value: float, unit: str, decimals: int = 0) -> str:
    """Format a consumed quantity with its unit (e.g., "12,500 kWh")."""
    return f"{value:,.{decimals}f} {unit}"


def format_emissions(value: Optional[float], decimals: int = 3) -> str:
    """Format tonnes of CO2e; None shows as "N/A"."""
    if value is None:
        return "N/A"
    return f"{value:,.{decimals}f} tCO2e"


def format_percent(value: float, decimals: int = 1) -> str:
    """Format a 0-100 percentage (e.g., 33.333 -> "33.3%")."""
    return f"{value:.{decimals}f}%"
