"""mnemos.pipeline — Prompt-side context injection."""
