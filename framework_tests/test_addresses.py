import pytest

from external_minicluster.cluster_management import addresses
from external_minicluster.cluster_management import errors


class TestHostPort:
    def test_str(self):
        assert str(addresses.HostPort(host="127.0.0.1", port=7051)) == "127.0.0.1:7051"

    def test_parse(self):
        assert addresses.HostPort.parse("localhost:80") == addresses.HostPort("localhost", 80)

    def test_parse_no_host(self):
        assert addresses.HostPort.parse(":7051") == addresses.HostPort("127.0.0.1", 7051)

    @pytest.mark.parametrize("hostport", ("localhost", "localhost:", "host:port", "h:70000"))
    def test_parse_invalid(self, hostport: str):
        with pytest.raises(ValueError):
            addresses.HostPort.parse(hostport)

    def test_ephemeral(self):
        assert addresses.EPHEMERAL_LOCAL.is_ephemeral
        assert addresses.ephemeral("0.0.0.0") == addresses.HostPort("0.0.0.0", 0)
        assert not addresses.HostPort("127.0.0.1", 1).is_ephemeral

    def test_resolve(self):
        resolved = addresses.HostPort("127.0.0.1", 7051).resolve_addresses()
        assert resolved[0] == ("127.0.0.1", 7051)

    def test_resolve_failure(self):
        with pytest.raises(errors.AddressResolutionError):
            addresses.HostPort("nonexistent.invalid", 7051).resolve_addresses()


def test_join_hostports():
    hostports = [addresses.HostPort("127.0.0.1", 1), addresses.HostPort("localhost", 2)]
    assert addresses.join_hostports(hostports) == "127.0.0.1:1,localhost:2"
    assert addresses.join_hostports([]) == ""
