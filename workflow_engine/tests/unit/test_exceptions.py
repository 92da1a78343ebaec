"""Unit tests for the exception hierarchy and error joining."""

from workflow_engine.core.exceptions import (
    CommandFailedError,
    ConfigurationError,
    JoinedError,
    MissingOptionError,
    WorkflowEngineException,
    join_errors,
)


def test_to_dict_uses_class_name_as_code():
    exc = ConfigurationError("bad config", details={"key": "imageTag"})

    assert exc.to_dict() == {
        "error": "ConfigurationError",
        "message": "bad config",
        "details": {"key": "imageTag"},
    }


def test_command_error_keeps_exit_code():
    exc = CommandFailedError("grype non-zero exit code: 2", exit_code=2)

    assert exc.exit_code == 2
    assert exc.details["exit_code"] == 2
    assert isinstance(exc, WorkflowEngineException)


def test_join_errors_empty():
    assert join_errors([]) is None
    assert join_errors([None, None]) is None


def test_join_errors_single_is_unwrapped():
    error = MissingOptionError("image name is required")

    assert join_errors([None, error]) is error


def test_join_errors_many():
    """Test that several errors are reported together in order."""
    first = MissingOptionError("build image Dockerfile required")
    second = MissingOptionError("build image context required")

    joined = join_errors([first, second])

    assert isinstance(joined, JoinedError)
    assert joined.errors == [first, second]
    assert str(joined) == "build image Dockerfile required\nbuild image context required"


def test_join_errors_flattens_nested_joins():
    first = ConfigurationError("invalid build arg 'NOVALUE', expected KEY=VALUE")
    second = MissingOptionError("build image Dockerfile required")
    third = MissingOptionError("build image context required")

    joined = join_errors([first, join_errors([second, third])])

    assert isinstance(joined, JoinedError)
    assert joined.errors == [first, second, third]
