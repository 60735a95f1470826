from chatbridge.services.result import AUTH_EXHAUSTED, Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("test value")
        assert result.ok is True
        assert result.value == "test value"
        assert result.error is None
        assert result.attempts == 1

    def test_success_after_retry(self):
        assert Result.success({"id": "c1"}, attempts=2).attempts == 2


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Record not found", "not_found")
        assert result.ok is False
        assert result.error == "Record not found"
        assert result.error_code == "not_found"
        assert result.value is None

    def test_failure_default_code(self):
        assert Result.failure("Error message").error_code == "unknown"

    def test_plain_failure_is_not_exhausted(self):
        assert Result.failure("Session expired", "session_expired").is_exhausted is False


class TestResultExhausted:
    def test_exhausted_marks_auth_failure(self):
        result = Result.exhausted("Refresh did not help")
        assert result.ok is False
        assert result.error_code == AUTH_EXHAUSTED
        assert result.attempts == 2
        assert result.is_exhausted is True


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        assert Result.success(None).unwrap_or("default") is None
