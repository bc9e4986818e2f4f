"""Utility helpers for cpc."""
