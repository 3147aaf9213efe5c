"""
Pytest configuration for paymaster-flows tests.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

from paymaster_flows.config import PaymasterFlowsConfig, SubmissionConfig
from paymaster_flows.flows import (
    SponsorshipFlow,
    setup_local_erc20_demo,
    setup_local_erc721_demo,
    setup_local_loop_demo,
)
from paymaster_flows.local_network import LocalRollup
from paymaster_flows.signer import LocalAccountSigner

SENDER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32


@pytest.fixture
def sample_eth_address():
    """Valid Ethereum address for testing."""
    return "0x1234567890123456789012345678901234567890"


@pytest.fixture
def sample_token_address():
    return "0x5FbDB2315678afecb367f032d93F642f64180aa3"


@pytest.fixture
def signer():
    return LocalAccountSigner.from_key(SENDER_KEY)


@pytest.fixture
def other_signer():
    return LocalAccountSigner.from_key(OTHER_KEY)


@pytest.fixture
def rollup():
    return LocalRollup()


@pytest.fixture
def fast_config():
    """Short polling so timeout tests finish quickly."""
    return PaymasterFlowsConfig(
        submission=SubmissionConfig(confirmation_timeout_seconds=5.0, poll_interval_seconds=0.01),
    )


@pytest.fixture
def erc20_demo(rollup, signer):
    return setup_local_erc20_demo(rollup, signer)


@pytest.fixture
def erc721_demo(rollup, signer):
    return setup_local_erc721_demo(rollup, signer)


@pytest.fixture
def loop_demo(rollup, signer):
    return setup_local_loop_demo(rollup, signer)


@pytest.fixture
def make_flow(fast_config):
    def factory(demo):
        return SponsorshipFlow(demo.rollup, demo.signer, fast_config)
    return factory
