"""
Test HTTPS port derivation.
"""

import pytest

from mcp_installer.utils.ports import default_https_port


class TestDefaultHttpsPort:
    """Test default_https_port."""

    @pytest.mark.parametrize("http_port,https_port", [
        (80, 443),
        (8080, 8443),
        (3000, 3443),
        (5000, 5443),
        (4000, 4443),
        (8000, 8443),
    ])
    def test_well_known_ports(self, http_port, https_port):
        assert default_https_port(http_port) == https_port

    def test_other_ports_are_offset(self):
        assert default_https_port(9000) == 9363
        assert default_https_port(1) == 364

    def test_deterministic(self):
        assert [default_https_port(3000) for _ in range(3)] == [3443] * 3
        assert default_https_port(default_https_port(80)) == default_https_port(443)

    @pytest.mark.parametrize("port", [0, -1, 65536, 65535])
    def test_out_of_range(self, port):
        with pytest.raises(ValueError):
            default_https_port(port)
