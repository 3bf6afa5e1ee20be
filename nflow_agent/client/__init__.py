"""NFlow platform client — the write API the execution nodes call."""

from nflow_agent.client.config import Settings
from nflow_agent.client.nflow_client import NFlowClient, PlatformError, describe_failure

__all__ = ["NFlowClient", "PlatformError", "Settings", "describe_failure"]
