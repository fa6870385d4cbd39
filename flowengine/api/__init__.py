"""HTTP and WebSocket API for the workflow engine."""
