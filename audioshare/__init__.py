"""Index audio folders on disk and serve them over HTTP."""
