"""Process-level infrastructure: configuration, storage backends, messaging."""
