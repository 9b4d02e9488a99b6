import os
import typing as tp


def get_current_test_id() -> str:
    """Return the id of the currently running test (empty string outside of a test)."""
    return os.environ.get("PYTEST_CURRENT_TEST", "").split(" ")[0]


def hypothesis_settings(max_examples: int = 100) -> tp.Any:
    import hypothesis

    return hypothesis.settings(
        max_examples=max_examples,
        deadline=None,
        suppress_health_check=(
            hypothesis.HealthCheck.too_slow,
            hypothesis.HealthCheck.function_scoped_fixture,
        ),
    )
