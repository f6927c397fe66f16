"""Per-client knowledge base: chunking, embeddings, durable snapshots and retrieval."""
