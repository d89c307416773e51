"""
Fibli story backend package.

This package provides a FastAPI application for the story library plus the
background pipeline that moves generated images into durable storage and
keeps every stored reference to them in sync.
"""
