"""Prompt text for the receipt extraction model."""

from __future__ import annotations

EXTRACTION_FIELDS = (
    ("date", "Transaction date in YYYY-MM-DD format"),
    ("stationName", "Name of the fuel station (the seller)"),
    ("sellerStreet", "Street address of the station, if printed"),
    ("sellerCity", "City of the station, if printed"),
    ("sellerState", 'Two-letter state abbreviation, e.g. "MO", if printed'),
    ("sellerZip", "ZIP code of the station, if printed"),
    ("gallons", "Gallons purchased, as a number"),
    ("pricePerGallon", "Price per gallon, as a number"),
    ("totalAmount", "Total amount paid, as a number"),
)


def get_default_extraction_prompt() -> str:
    lines = "\n".join(f"- {name}: {desc}" for name, desc in EXTRACTION_FIELDS)
    return (
        "You are reading a fuel station receipt. Return ONLY a JSON object with these fields:\n"
        f"{lines}\n\n"
        "Use null for any field you cannot read. Do not guess address fields; "
        "include them only when they are printed on the receipt."
    )
