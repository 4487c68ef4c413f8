"""
Photo frame compositing and delivery pipeline.

Exposes reusable primitives for normalizing captured photos, compositing them
under branded frame artwork, generating composites in batches, and uploading
the results through a resilient queue. The FastAPI application in `api`
provides the server-side compositing fallback.
"""
