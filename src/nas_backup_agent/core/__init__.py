"""Core backup engine: data model, pipeline stages and the coordinator."""
