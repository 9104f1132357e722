"""
Cancer image classification microservice package.

Exposes reusable primitives for fetching and caching the model artifact,
preprocessing images, running inference, and serving the FastAPI application.
"""
