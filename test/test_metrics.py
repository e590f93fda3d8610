from media_processor.core.metrics import MetricsCollector, ProcessingStage


def test_stage_outcomes_are_counted():
    collector = MetricsCollector()
    ok = collector.start_stage(ProcessingStage.DOWNLOAD, "job-1")
    collector.end_stage(ok, items_processed=1)
    bad = collector.start_stage(ProcessingStage.TRANSFORM, "job-1")
    collector.end_stage(bad, success=False, error_message="No outputs generated")

    assert collector.counters == {"download_succeeded": 1, "transform_failed": 1}
    summary = collector.get_summary()
    assert set(summary["average_stage_duration"]) == {"download", "transform"}
    assert summary["failed_stages"] == [
        {"stage": "transform", "job_id": "job-1", "error": "No outputs generated"}
    ]


def test_history_is_bounded():
    collector = MetricsCollector(history_size=5)
    for n in range(20):
        collector.end_stage(collector.start_stage(ProcessingStage.UPLOAD, f"j{n}"))
    assert len(collector.metrics) == 5
    assert collector.counters["upload_succeeded"] == 20
