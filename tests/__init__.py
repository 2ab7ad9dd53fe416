"""LuksVault test suite."""
