"""Shared configuration, logging, caching and error types."""
