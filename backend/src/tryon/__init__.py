"""Virtual try-on backend: job lifecycle, provider webhooks and credit ledger."""
