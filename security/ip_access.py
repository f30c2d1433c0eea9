"""
security/ip_access.py -- IP allow/deny evaluation.

decide() is the pure rule: blacklist match -> deny; else non-empty
whitelist without a match -> deny; else allow. Rules are single addresses
or CIDR blocks; an IPv4-mapped IPv6 client address is compared as IPv4.

IpAccessControl.evaluate() loads the rules, calls decide(), and writes the
audit entry:
  deny via blacklist            -> ip_blocked (blocked)
  deny via whitelist            -> ip_not_whitelisted (blocked)
  allow via explicit whitelist  -> ip_allowed
  allow because no rule applies -> nothing (an unremarkable request)
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable

from security.audit import AuditLog
from security.models import EventType, IpDecision, IpRule, IpRuleKind
from security.store import SecurityStore

logger = logging.getLogger("gatehouse.ip_access")

REASON_BLACKLISTED = "blacklisted"
REASON_NOT_WHITELISTED = "not whitelisted"


def _parse_client(ip: str):
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def parse_rule_address(value: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    """Parse a rule's address or CIDR. Raises ValueError when it is neither.

    Host bits are tolerated (strict=False) so "10.0.0.5/24" means 10.0.0.0/24.
    """
    return ipaddress.ip_network(value.strip(), strict=False)


def rule_matches(rule: IpRule, ip: str) -> bool:
    addr = _parse_client(ip)
    if addr is None:
        return False
    try:
        network = parse_rule_address(rule.ip_address)
    except ValueError:
        logger.warning("Ignoring unparsable IP rule %s (%r)", rule.id, rule.ip_address)
        return False
    return addr.version == network.version and addr in network


def decide(ip: str, rules: Iterable[IpRule]) -> IpDecision:
    rules = list(rules)
    for rule in rules:
        if rule.kind == IpRuleKind.BLACKLIST and rule_matches(rule, ip):
            return IpDecision(ip_address=ip, allowed=False, reason=REASON_BLACKLISTED, matched_rule=rule)
    whitelist = [r for r in rules if r.kind == IpRuleKind.WHITELIST]
    if whitelist:
        for rule in whitelist:
            if rule_matches(rule, ip):
                return IpDecision(ip_address=ip, allowed=True, matched_rule=rule)
        return IpDecision(ip_address=ip, allowed=False, reason=REASON_NOT_WHITELISTED)
    return IpDecision(ip_address=ip, allowed=True)


class IpAccessControl:
    """Evaluates client IPs against the stored rules and audits the outcome."""

    def __init__(self, store: SecurityStore, audit: AuditLog) -> None:
        self._store = store
        self._audit = audit

    def evaluate(self, ip: str, *, user_agent: str | None = None, request_path: str | None = None) -> IpDecision:
        decision = decide(ip, self._store.list_ip_rules())
        if not decision.allowed:
            blacklisted = decision.reason == REASON_BLACKLISTED
            self._audit.log(
                EventType.IP_BLOCKED if blacklisted else EventType.IP_NOT_WHITELISTED,
                "IP address is blacklisted" if blacklisted else "IP address not in whitelist",
                ip_address=ip,
                user_agent=user_agent,
                request_path=request_path,
                blocked=True,
                metadata={"ruleId": decision.matched_rule.id} if decision.matched_rule else None,
            )
        elif decision.matched_rule is not None:
            self._audit.log(
                EventType.IP_ALLOWED,
                "IP address matched whitelist",
                ip_address=ip,
                user_agent=user_agent,
                request_path=request_path,
                metadata={"ruleId": decision.matched_rule.id},
            )
        return decision
