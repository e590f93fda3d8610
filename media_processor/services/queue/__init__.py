from .topology import PipelineStep, QueueBinding, QueueTopology, StageRouter

__all__ = ["PipelineStep", "QueueBinding", "QueueTopology", "StageRouter"]
