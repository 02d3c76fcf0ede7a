from src.api.services.circuit_breaker_service import CircuitBreakerRegistry
from src.api.services.degradation_service import DegradationLevel, DegradationService, ServiceType


class _StatusError(Exception):
    def __init__(self, status):
        super().__init__(f"status {status}")
        self.status = status


def test_starts_healthy():
    service = DegradationService()

    status = service.get_overall_status()

    assert status.level == DegradationLevel.NONE
    assert status.affected_services == []
    assert status.message == "All services operational"


def test_error_levels_follow_error_kind():
    service = DegradationService()

    assert service.handle_service_error(ServiceType.TAVILY, _StatusError(429)) == DegradationLevel.PARTIAL
    assert service.handle_service_error(ServiceType.PINECONE, _StatusError(503)) == DegradationLevel.SEVERE
    assert service.handle_service_error(ServiceType.EMBEDDING, ConnectionError("reset")) == DegradationLevel.SEVERE
    assert service.handle_service_error(ServiceType.OPENAI, ValueError("odd")) == DegradationLevel.PARTIAL


def test_consecutive_failures_escalate_to_critical():
    service = DegradationService(down_after_failures=3)

    for _ in range(3):
        level = service.handle_service_error(ServiceType.OPENAI, ValueError("bad"))

    assert level == DegradationLevel.CRITICAL
    assert service.get_statistics()["services"]["openai"]["state"] == "down"


def test_success_restores_service():
    service = DegradationService()
    service.handle_service_error(ServiceType.TAVILY, _StatusError(500))

    service.record_success(ServiceType.TAVILY)

    assert service.get_service_level(ServiceType.TAVILY) == DegradationLevel.NONE
    assert service.health(ServiceType.TAVILY).consecutive_failures == 0


def test_overall_level_is_worst_service_and_open_circuit_counts_as_severe():
    circuits = CircuitBreakerRegistry()
    service = DegradationService(circuits)
    service.handle_service_error(ServiceType.TAVILY, _StatusError(429))

    circuits.open("pinecone-query")
    status = service.get_overall_status()

    assert status.level == DegradationLevel.SEVERE
    assert set(status.affected_services) == {ServiceType.TAVILY, ServiceType.PINECONE}
    assert "Limited functionality" in status.message


def test_stale_failures_age_out():
    service = DegradationService(recovery_window_seconds=0.0)
    service.handle_service_error(ServiceType.EMBEDDING, _StatusError(500))
    service.health(ServiceType.EMBEDDING).last_failure_at -= 1.0

    assert service.get_service_level(ServiceType.EMBEDDING) == DegradationLevel.NONE


def test_reset_all_clears_every_service():
    service = DegradationService()
    service.handle_service_error(ServiceType.OPENAI, _StatusError(500))

    service.reset_all()

    assert service.get_statistics()["degraded_services"] == 0
