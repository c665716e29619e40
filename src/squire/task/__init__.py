"""Task records, file locks, admission control and the reconciliation loop."""
