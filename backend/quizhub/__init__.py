"""Application package for the quiz backend.

This package exposes the service, repository and model modules used by
the FastAPI application: quiz authoring and editing, grading of
submissions and user accounts. Individual modules contain the concrete
implementations and documentation.
"""
