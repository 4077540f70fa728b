"""Evidex HTTP API."""
