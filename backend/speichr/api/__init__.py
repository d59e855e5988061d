"""Speichr HTTP API."""
