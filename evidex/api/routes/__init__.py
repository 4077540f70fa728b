"""Evidex API routes."""
