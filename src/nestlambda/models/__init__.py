"""Pydantic models for nestlambda configuration and state."""
