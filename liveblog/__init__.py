"""Live-blog service: talk audio in, incremental summary cards out over SSE."""
