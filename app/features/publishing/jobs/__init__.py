from .aggregator_job import AggregatorJob, AggregatorJobError, AggregatorMetrics

__all__ = ["AggregatorJob", "AggregatorJobError", "AggregatorMetrics"]
