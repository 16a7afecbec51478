"""Application package for the delivery marketplace backend.

This package exposes the service, repository, model and relay modules
used by the FastAPI application. Individual modules contain the concrete
implementations and documentation.
"""
