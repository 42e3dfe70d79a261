"""Unit tests for the policy compiler."""

import pytest

from hostwall.core.config import DCPortsConfig, FirewallConfig, RateLimitConfig
from hostwall.policy.addresses import classify_address, parse_address_list
from hostwall.policy.compiler import PolicyInputs, compile_policies, compile_policy
from hostwall.policy.model import (
    Action,
    AddressFamily,
    Chain,
    ChainPolicy,
    PortSet,
    Protocol,
    RecentMode,
)


TEAM = classify_address("10.0.0.5")
DC = classify_address("10.0.0.10")
DC6 = classify_address("fd00::10")


@pytest.fixture
def config():
    """Default compiler constants."""
    return FirewallConfig()


class TestBaseline:
    """Tests for the rules every policy carries."""

    @pytest.mark.parametrize("family", list(AddressFamily))
    def test_default_deny(self, config, family):
        """All built-in chains default to DROP."""
        policy = compile_policy(config, family, PolicyInputs())
        for chain in (Chain.INPUT, Chain.FORWARD, Chain.OUTPUT):
            assert policy.default_for(chain) is ChainPolicy.DROP

    def test_v6_without_addresses(self, config):
        """IPv6 with no addresses gets baseline and log rules only."""
        policy = compile_policy(config, AddressFamily.V6, PolicyInputs())
        assert policy.rule_counts() == {Chain.INPUT: 5, Chain.FORWARD: 0, Chain.OUTPUT: 5}
        assert "-p icmpv6 --icmpv6-type echo-request -m limit --limit 1/second -j ACCEPT" in policy.render()

    def test_invalid_state_dropped_first(self, config):
        """INVALID packets are dropped before anything can accept them."""
        policy = compile_policy(config, AddressFamily.V4, PolicyInputs())
        for chain in (Chain.INPUT, Chain.OUTPUT):
            first = policy.rules_in(chain)[0]
            assert first.action is Action.DROP
            assert [s.value for s in first.states] == ["INVALID"]

    @pytest.mark.parametrize("family", list(AddressFamily))
    def test_log_rule_is_last(self, config, family):
        """The LOG rule closes INPUT and OUTPUT."""
        inputs = PolicyInputs(team_addresses=(TEAM,), dc_addresses=(DC, DC6), in_domain=True)
        policy = compile_policy(config, family, inputs)
        for chain in (Chain.INPUT, Chain.OUTPUT):
            rules = policy.rules_in(chain)
            assert rules[-1].action is Action.LOG
            assert all(r.action is not Action.LOG for r in rules[:-1])

    def test_log_prefixes(self, config):
        """Prefixes name the direction, IPv6 ones carry a 6."""
        v4 = compile_policy(config, AddressFamily.V4, PolicyInputs())
        v6 = compile_policy(config, AddressFamily.V6, PolicyInputs())
        assert v4.rules_in(Chain.OUTPUT)[-1].log_prefix == "FIREWALL_DROP_OUT: "
        assert v6.rules_in(Chain.INPUT)[-1].log_prefix == "FIREWALL_DROP_IN6: "
        assert v6.rules_in(Chain.INPUT)[-1].log_level == 6


class TestSshRules:
    """Tests for the per-address SSH rate-limit group."""

    def test_team_address_group(self, config):
        """One team address yields record, check and accept rules on port 22."""
        policy = compile_policy(config, AddressFamily.V4, PolicyInputs(team_addresses=(TEAM,)))

        ssh = [r for r in policy.rules_in(Chain.INPUT) if r.source == TEAM]
        assert len(ssh) == 3
        record, check, accept = ssh

        assert record.action is None
        assert record.recent.mode is RecentMode.SET
        assert check.action is Action.DROP
        assert check.recent.mode is RecentMode.RCHECK
        assert (check.recent.seconds, check.recent.hitcount) == (60, 6)
        assert accept.action is Action.ACCEPT
        assert accept.recent is None
        for rule in ssh:
            assert rule.protocol is Protocol.TCP
            assert rule.ports == PortSet.single(22)

    def test_group_order(self, config):
        """Record precedes check, check precedes accept, for every address."""
        team = parse_address_list("10.0.0.5 10.0.0.6")
        policy = compile_policy(config, AddressFamily.V4, PolicyInputs(team_addresses=team))
        rules = list(policy.rules_in(Chain.INPUT))
        for address in team:
            indices = [i for i, r in enumerate(rules) if r.source == address]
            modes = [rules[i].recent.mode if rules[i].recent else None for i in indices]
            assert modes == [RecentMode.SET, RecentMode.RCHECK, None]
            assert indices == sorted(indices)

    def test_rendered_group(self, config):
        """Rendered lines match the iptables syntax."""
        policy = compile_policy(config, AddressFamily.V4, PolicyInputs(team_addresses=(TEAM,)))
        lines = policy.render().splitlines()
        assert lines[-6:] == [
            "-A INPUT -p tcp -s 10.0.0.5 --dport 22 -m recent --name SSH --set",
            "-A INPUT -p tcp -s 10.0.0.5 --dport 22 -m recent --name SSH "
            "--rcheck --seconds 60 --hitcount 6 -j DROP",
            "-A INPUT -p tcp -s 10.0.0.5 --dport 22 -j ACCEPT",
            '-A INPUT -j LOG --log-prefix "FIREWALL_DROP_IN: " --log-level 6',
            '-A OUTPUT -j LOG --log-prefix "FIREWALL_DROP_OUT: " --log-level 6',
            "COMMIT",
        ]
        assert policy.rule_counts() == {Chain.INPUT: 8, Chain.FORWARD: 0, Chain.OUTPUT: 5}

    def test_custom_rate_limit(self):
        """Configured count and window flow into the check rule."""
        config = FirewallConfig(ssh_port=2222, ssh_rate_limit=RateLimitConfig(count=3, window=30))
        policy = compile_policy(config, AddressFamily.V4, PolicyInputs(team_addresses=(TEAM,)))
        check = [r for r in policy.rules if r.action is Action.DROP and r.recent][0]
        assert (check.recent.seconds, check.recent.hitcount) == (30, 4)
        assert check.ports == PortSet.single(2222)

    def test_addresses_routed_by_family(self, config):
        """An IPv6 team address only shows up in the IPv6 policy."""
        team6 = classify_address("fd00::5")
        inputs = PolicyInputs(team_addresses=(TEAM, team6))
        policies = compile_policies(config, inputs)
        assert team6.literal not in policies[AddressFamily.V4].render()
        assert TEAM.literal not in policies[AddressFamily.V6].render()
        assert f"-s {team6.literal} --dport 22 -j ACCEPT" in policies[AddressFamily.V6].render()


class TestDomainControllerRules:
    """Tests for DC rules."""

    def test_dc_rules_mirrored(self):
        """INPUT accepts from the DC and OUTPUT accepts toward it."""
        config = FirewallConfig(dc_ports=DCPortsConfig(v4_tcp="53,88,389"))
        inputs = PolicyInputs(dc_addresses=(DC,), in_domain=True)
        policy = compile_policy(config, AddressFamily.V4, inputs)

        inbound = [r for r in policy.rules_in(Chain.INPUT)
                   if r.source == DC and r.protocol is Protocol.TCP]
        outbound = [r for r in policy.rules_in(Chain.OUTPUT)
                    if r.destination == DC and r.protocol is Protocol.TCP]
        assert len(inbound) == 1 and len(outbound) == 1
        assert inbound[0].action is Action.ACCEPT
        assert outbound[0].action is Action.ACCEPT
        assert {53, 88, 389} == {p for p in (53, 88, 389, 445) if p in inbound[0].ports}
        assert outbound[0].ports == inbound[0].ports
        assert outbound[0].source is None

        rendered = policy.render()
        assert "-A INPUT -p tcp -s 10.0.0.10 -m multiport --dports 53,88,389 -j ACCEPT" in rendered
        assert "-A OUTPUT -p tcp -d 10.0.0.10 -m multiport --dports 53,88,389 -j ACCEPT" in rendered

    def test_dc_udp_rules(self, config):
        """UDP uses its own port set."""
        inputs = PolicyInputs(dc_addresses=(DC,), in_domain=True)
        rendered = compile_policy(config, AddressFamily.V4, inputs).render()
        assert "-A INPUT -p udp -s 10.0.0.10 -m multiport --dports 53,88,123,389,464 -j ACCEPT" in rendered

    def test_not_in_domain(self, config):
        """DC addresses are ignored unless the host is domain-joined."""
        inputs = PolicyInputs(dc_addresses=(DC,), in_domain=False)
        policy = compile_policy(config, AddressFamily.V4, inputs)
        assert DC.literal not in policy.render()

    def test_v6_dc_ports(self, config):
        """IPv6 DCs get the IPv6 port sets."""
        inputs = PolicyInputs(dc_addresses=(DC6,), in_domain=True)
        rendered = compile_policy(config, AddressFamily.V6, inputs).render()
        assert "-A INPUT -p tcp -s fd00::10 -m multiport --dports 53,88,389,443,636,3268,3269 -j ACCEPT" in rendered

    def test_dc_rules_follow_ssh_rules(self, config):
        """Team rules come before DC rules on INPUT."""
        inputs = PolicyInputs(team_addresses=(TEAM,), dc_addresses=(DC,), in_domain=True)
        rules = list(compile_policy(config, AddressFamily.V4, inputs).rules_in(Chain.INPUT))
        last_team = max(i for i, r in enumerate(rules) if r.source == TEAM)
        first_dc = min(i for i, r in enumerate(rules) if r.source == DC)
        assert last_team < first_dc


class TestDeterminism:
    """Tests for pure, repeatable compilation."""

    def test_byte_identical(self, config):
        """Compiling twice gives identical text."""
        inputs = PolicyInputs(
            team_addresses=parse_address_list("10.0.0.5 fd00::5"),
            dc_addresses=parse_address_list("10.0.0.10"),
            in_domain=True,
        )
        first = {f: p.render() for f, p in compile_policies(config, inputs).items()}
        second = {f: p.render() for f, p in compile_policies(FirewallConfig(), inputs).items()}
        assert first == second

    def test_family_order(self, config):
        """IPv4 is compiled first."""
        assert list(compile_policies(config, PolicyInputs())) == [AddressFamily.V4, AddressFamily.V6]
