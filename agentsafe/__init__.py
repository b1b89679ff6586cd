"""Risk-gated action governor: veto window, safety pipeline and budget ledger."""
