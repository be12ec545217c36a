"""HTTP interface for invoice ingestion."""
