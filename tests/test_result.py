from app.services.result import ErrorCode, Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("booking-1")
        assert result.ok is True
        assert result.value == "booking-1"
        assert result.error is None

    def test_success_with_different_types(self):
        assert Result.success(4).value == 4
        assert Result.success([]).value == []


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Table already booked", ErrorCode.OVERLAP)
        assert result.ok is False
        assert result.error == "Table already booked"
        assert result.error_code == "overlap"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual").unwrap_or("default") == "actual"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", ErrorCode.DB_ERROR).unwrap_or([]) == []

    def test_unwrap_or_with_none_value(self):
        assert Result.success(None).unwrap_or("default") is None


class TestErrorCodes:
    def test_stage_codes(self):
        assert ErrorCode.INTERPRETATION_FAILED == "interpretation_failed"
        assert ErrorCode.MUTATION_FAILED == "mutation_failed"
        assert ErrorCode.DISPATCH_FAILED == "dispatch_failed"

    def test_store_codes(self):
        assert ErrorCode.TIMEOUT == "timeout"
        assert ErrorCode.DB_ERROR == "db_error"
