import pytest

from tests.integration.fixtures import ALICE, build_loan_tree, create_backend


@pytest.fixture
def backend():
    """Fresh in-memory backend on a manual clock at T1."""
    return create_backend()


@pytest.fixture
def loan(backend):
    """Published loan-purpose tree in the fresh backend."""
    return build_loan_tree(backend)


@pytest.fixture
def scenario(backend, loan):
    """A started APPLICATION scenario on the loan tree; returns its id."""
    return backend.scenarios.start(ALICE, loan.tree_id, scenario_id="scn_test").state.scenario_id
