"""LuksVault command-line tools."""
