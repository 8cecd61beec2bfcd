"""Concrete plant order fulfillment backend."""
