# tests/test_network_monitor.py
import socket
import subprocess
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from limen.core.errors import SystemCallError
from limen.core.schemas import ConnectionState
from limen.modules.network_monitor import NetworkMonitor, interface_display_name, run_command

from conftest import FakeClock

LSOF = """\
COMMAND   PID USER   FD   TYPE DEVICE SIZE/OFF NODE NAME
sshd      412 root    3u  IPv4 0x1234      0t0  TCP *:22 (LISTEN)
curl     9001   me    5u  IPv4 0x5678      0t0  TCP 192.168.1.5:50000->93.184.216.34:443 (ESTABLISHED)
"""

NETSTAT_HEADER = "Name  Mtu   Network     Address            Ipkts Ierrs  Ibytes  Opkts Oerrs  Obytes  Coll"


class FakeRunner:
    def __init__(self):
        self.bytes_in = 10_000
        self.bytes_out = 5_000
        self.netstat_error = None
        self.calls = []

    def __call__(self, args):
        self.calls.append(list(args))
        if args[0] == "lsof":
            return LSOF
        if self.netstat_error:
            raise self.netstat_error
        return "\n".join([
            NETSTAT_HEADER,
            f"en0   1500  <Link#4>    a4:83:e7:00:00:01    100     0  {self.bytes_in}  50     0  {self.bytes_out}  0",
        ])


ADDRS = {
    "en0": [
        SimpleNamespace(family=socket.AF_INET, address="192.168.1.5"),
        SimpleNamespace(family=socket.AF_INET6, address="fe80::1%en0"),
        SimpleNamespace(family=psutil.AF_LINK, address="a4:83:e7:00:00:01"),
    ],
    "lo0": [SimpleNamespace(family=socket.AF_INET, address="127.0.0.1")],
}

IF_STATS = {
    "en0": SimpleNamespace(isup=True, mtu=1500, flags="up,broadcast,running"),
    "lo0": SimpleNamespace(isup=True, mtu=16384, flags="up,loopback,running"),
}


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def clock():
    return FakeClock(start=100.0)


@pytest.fixture
def monitor(runner, clock):
    with patch('limen.modules.network_monitor.psutil.net_if_addrs', return_value=ADDRS), \
         patch('limen.modules.network_monitor.psutil.net_if_stats', return_value=IF_STATS):
        yield NetworkMonitor(runner=runner, clock=clock)


def test_connections_use_socket_listing(monitor, runner):
    conns = monitor.list_connections()
    assert runner.calls[0] == ["lsof", "-i", "-n", "-P"]
    assert len(conns) == 2
    assert [c.pid for c in monitor.list_connections(ConnectionState.ESTABLISHED)] == [9001]
    assert [c.process_name for c in monitor.get_connections(412)] == ["sshd"]


def test_interfaces(monitor):
    interfaces = monitor.list_interfaces()
    assert [i.name for i in interfaces] == ["en0", "lo0"]

    en0, lo0 = interfaces
    assert en0.display_name == "Wi-Fi"
    assert en0.mac_address == "a4:83:e7:00:00:01"
    assert en0.ipv6_addresses == ["fe80::1"]
    assert (en0.bytes_in, en0.bytes_out, en0.mtu) == (10_000, 5_000, 1500)
    assert not en0.is_loopback
    assert lo0.is_loopback
    assert lo0.bytes_in == 0


def test_stats_throughput_is_delta_over_elapsed(monitor, runner, clock):
    first = monitor.get_stats()
    assert first.bytes_in_per_second == 0.0
    assert first.active_connections == 2

    runner.bytes_in += 4_000
    runner.bytes_out += 1_000
    clock.advance(2)
    second = monitor.get_stats()
    assert second.bytes_in_per_second == 2_000.0
    assert second.bytes_out_per_second == 500.0
    assert second.total_bytes_in == 14_000

    # counter reset
    runner.bytes_in = 0
    clock.advance(2)
    assert monitor.get_stats().bytes_in_per_second == 0.0


def test_psutil_counters_when_netstat_missing(monitor, runner):
    runner.netstat_error = SystemCallError("netstat not found")
    per_nic = {"en0": SimpleNamespace(bytes_recv=7, bytes_sent=8, packets_recv=1, packets_sent=2)}
    with patch('limen.modules.network_monitor.psutil.net_io_counters', return_value=per_nic):
        en0 = monitor.list_interfaces()[0]
    assert (en0.bytes_in, en0.bytes_out) == (7, 8)


def test_display_names():
    assert interface_display_name("lo0") == "Loopback"
    assert interface_display_name("eth0") == "Ethernet eth0"
    assert interface_display_name("tun5") == "Tunnel tun5"
    assert interface_display_name("wlp2s0") == "wlp2s0"


def test_run_command_missing_binary():
    with patch('subprocess.run', side_effect=FileNotFoundError):
        with pytest.raises(SystemCallError, match="lsof not found"):
            run_command(["lsof", "-i"])


def test_run_command_timeout():
    with patch('subprocess.run', side_effect=subprocess.TimeoutExpired(cmd="lsof", timeout=1)):
        with pytest.raises(SystemCallError, match="timed out"):
            run_command(["lsof", "-i"], timeout=1)


def test_run_command_ignores_exit_status():
    completed = MagicMock(returncode=1, stdout="")
    with patch('subprocess.run', return_value=completed) as mock_run:
        assert run_command(["lsof", "-iTCP:9"]) == ""
    assert mock_run.call_args.kwargs["check"] is False


def test_reverse_dns_is_cached(monitor):
    with patch('limen.modules.network_monitor.socket.gethostbyaddr',
               return_value=("example.org", [], ["93.184.216.34"])) as lookup:
        assert monitor.resolve_hostname("93.184.216.34") == "example.org"
        assert monitor.resolve_hostname("93.184.216.34") == "example.org"
    lookup.assert_called_once()


def test_reverse_dns_failure(monitor):
    with patch('limen.modules.network_monitor.socket.gethostbyaddr', side_effect=socket.herror):
        assert monitor.resolve_hostname("10.9.9.9") is None
