import pytest

from tool_stream.exceptions import (
    DispatchError,
    FlowConflictError,
    IndexAllocationError,
    MalformedToolCall,
    RecordNotFound,
    StoreError,
    ToolExecutionError,
    ToolNotFound,
    ToolStreamError,
    ToolValidationError,
)


class TestExceptionHierarchy:
    def test_all_exceptions_inherit_from_tool_stream_error(self):
        for exc_class in [
            MalformedToolCall,
            ToolNotFound,
            ToolValidationError,
            ToolExecutionError,
            DispatchError,
            IndexAllocationError,
            FlowConflictError,
            StoreError,
            RecordNotFound,
        ]:
            assert issubclass(exc_class, ToolStreamError)

    def test_tool_stream_error_inherits_from_exception(self):
        assert issubclass(ToolStreamError, Exception)

    def test_exceptions_carry_message(self):
        err = ToolNotFound("missing_tool")
        assert str(err) == "missing_tool"

    def test_catchable_as_base(self):
        with pytest.raises(ToolStreamError):
            raise DispatchError("queue full")
