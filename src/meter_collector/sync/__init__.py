"""Remote catalog sync, reading upload and the coordinator that gates them."""
