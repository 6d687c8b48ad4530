"""Concurrency helpers."""
