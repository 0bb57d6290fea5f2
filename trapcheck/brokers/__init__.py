"""Broker discovery: the shared broker list cache and broker selection."""

from trapcheck.brokers.cache import BrokerCache
from trapcheck.brokers.selector import BrokerSelector, base_check_type, instance_address

__all__ = [
    "BrokerCache",
    "BrokerSelector",
    "base_check_type",
    "instance_address",
]
