"""IP address utilities for source matching"""
import ipaddress
from typing import Iterable, List, Optional, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_ip_range(ip_range: str) -> Optional[IPNetwork]:
    """
    Parse CIDR notation to IP network object

    Args:
        ip_range: CIDR notation string (e.g., "192.168.1.0/24")

    Returns:
        IPv4Network or IPv6Network object, or None if invalid
    """
    try:
        return ipaddress.ip_network(ip_range.strip(), strict=False)
    except (ValueError, AttributeError):
        return None


def parse_ip_ranges(ip_ranges: Optional[Iterable[str]]) -> List[IPNetwork]:
    """Parse a list of CIDR strings, dropping entries that are not valid ranges"""
    networks = []
    for ip_range in ip_ranges or []:
        network = parse_ip_range(ip_range)
        if network is not None:
            networks.append(network)
    return networks


def ip_in_networks(ip: str, networks: Iterable[IPNetwork]) -> bool:
    """Check if an IP falls inside any of the given networks (mixed v4/v6 allowed)"""
    try:
        ip_obj = ipaddress.ip_address(ip.strip())
    except (ValueError, AttributeError):
        return False

    for network in networks:
        # Containment across address families is always False
        if network.version != ip_obj.version:
            continue
        if ip_obj in network:
            return True
    return False
