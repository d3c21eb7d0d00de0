"""Artifact publishing to S3."""

from taxonomy_worker.publish.publisher import ArtifactPublisher, PublishRequest

__all__ = [
    "ArtifactPublisher",
    "PublishRequest",
]
