# SPDX-FileCopyrightText: 2025-present Neil Smith <neil@nsmith.net>
#
# SPDX-License-Identifier: MIT
from .client import AimsClient, HttpAimsClient
from .errors import (
    AggregationError,
    AimsError,
    HierarchyDepthError,
    ResponseValidationError,
    TransportError,
)
from .models import Account, Relationship, TopologyNode, User
from .query import AimsTopologyView
from .topology import flatten_topology

__all__ = [
    "AimsClient",
    "HttpAimsClient",
    "AimsTopologyView",
    "flatten_topology",
    "Relationship",
    "TopologyNode",
    "Account",
    "User",
    "AimsError",
    "TransportError",
    "ResponseValidationError",
    "HierarchyDepthError",
    "AggregationError",
]
