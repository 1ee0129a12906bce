"""HTTP surface for the audit pipeline."""
