"""
Test suite for the bulk listing ingestion backend.

Run all tests: pytest
Run unit tests only: pytest tests/unit/
Run end-to-end scenarios: pytest tests/test_end_to_end_bulk_ingest.py -v
Run specific file: pytest tests/unit/test_resumption_service.py -v
"""
