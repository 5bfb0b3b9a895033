"""File-backed services: session store, transcript files, durable writes."""
