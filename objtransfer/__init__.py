"""Client-side transfer engine for S3-compatible object storage."""
