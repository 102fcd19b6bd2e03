"""RevShare backfill pipeline: export, allocate, batch, summarize, verify."""
