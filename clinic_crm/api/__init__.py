"""HTTP surface for the scheduling core."""
