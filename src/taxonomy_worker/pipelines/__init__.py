"""Job pipelines that turn a taxonomy checkout into artifacts."""
