"""Cross-competitor creative analysis."""
