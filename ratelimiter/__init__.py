"""Distributed sliding-window rate limiter."""
