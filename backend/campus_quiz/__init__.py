"""Campus quiz engine backend.

This package exposes the service, repository and model modules used by
the FastAPI application: question authoring, quiz scheduling, the
single-attempt lifecycle with exact-match scoring, and access codes.
Individual modules contain the concrete implementations and documentation.
"""
