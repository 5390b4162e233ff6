"""End-to-end scenario tests for the idempotency filter.

Each scenario drives a real ASGI app through the middleware and checks one
aspect of duplicate-request handling.
"""
