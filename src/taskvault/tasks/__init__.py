"""Task models, document I/O and graph validation."""
