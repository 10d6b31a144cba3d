from email_worker.prometheus import WorkerMetrics


def test_worker_metrics_counters_and_gauge():
    metrics = WorkerMetrics()

    metrics.inc_sent()
    metrics.inc_sent()
    metrics.inc_failed()
    metrics.inc_retried()
    metrics.inc_send_error()
    metrics.set_queue_lengths(3, 1, 2)

    output = metrics.generate_latest()
    assert b"ew_sent_total 2.0" in output
    assert b"ew_failed_total 1.0" in output
    assert b"ew_retried_total 1.0" in output
    assert b"ew_send_errors_total 1.0" in output
    assert b'ew_queue_length{queue="main"} 3.0' in output
    assert b'ew_queue_length{queue="retry"} 2.0' in output


def test_each_instance_has_its_own_registry():
    first = WorkerMetrics()
    second = WorkerMetrics()
    first.inc_sent()
    assert b"ew_sent_total 0.0" in second.generate_latest()
