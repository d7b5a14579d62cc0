"""Shared primitives: errors, ids, time, logging setup."""
