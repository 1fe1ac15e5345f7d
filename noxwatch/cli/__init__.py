"""Noxwatch command line interface."""
