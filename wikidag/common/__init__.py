"""Shared configuration, logging, errors and retry helpers."""
