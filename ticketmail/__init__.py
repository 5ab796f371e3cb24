"""Mail-to-ticket ingestion and completion notices."""
