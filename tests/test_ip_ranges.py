"""IP 段展开模块的单元测试"""

import ipaddress
import os
import random
import tempfile
import unittest

from ip_ranges import (
    IPRange,
    IPRangeError,
    fix_ip,
    init_rand_seed,
    load_ip_ranges,
    rand_ip_end_with,
    read_ip_specs,
    split_ip_text,
)
from settings import RangeConfig


class TestFixIP(unittest.TestCase):
    """单独 IP 补全子网掩码"""

    def test_ipv4_without_mask(self):
        self.assertEqual(fix_ip("1.1.1.1"), "1.1.1.1/32")

    def test_ipv6_without_mask(self):
        self.assertEqual(fix_ip("2606:4700::"), "2606:4700::/128")

    def test_mask_kept(self):
        self.assertEqual(fix_ip("1.1.1.0/24"), "1.1.1.0/24")
        self.assertEqual(fix_ip("2606:4700::/32"), "2606:4700::/32")


class TestRandIPEndWith(unittest.TestCase):

    def test_zero_returns_zero(self):
        self.assertEqual(rand_ip_end_with(0), 0)

    def test_within_range(self):
        rng = random.Random(7)
        for num in (255, 10, 1):
            for _ in range(200):
                value = rand_ip_end_with(num, rng)
                self.assertGreaterEqual(value, 0)
                self.assertLess(value, num)

    def test_init_rand_seed(self):
        init_rand_seed()
        self.assertLess(rand_ip_end_with(5), 5)


class TestIPRange(unittest.TestCase):
    """IPRange 展开"""

    def test_get_ip_range(self):
        cases = [
            ("192.168.1.0/24", 0, 255),
            ("10.0.0.0/25", 0, 127),
            ("10.0.0.0/28", 0, 15),
            ("10.0.0.0/30", 0, 3),
            ("10.0.0.5/30", 4, 3),
            ("10.0.0.0/16", 0, 255),
        ]
        for spec, expect_min, expect_hosts in cases:
            with self.subTest(spec=spec):
                min_ip, hosts = IPRange(spec).get_ip_range()
                self.assertEqual(min_ip, expect_min)
                self.assertEqual(hosts, expect_hosts)

    def test_unparsable_raises(self):
        with self.assertRaises(IPRangeError):
            IPRange("not-an-ip")
        with self.assertRaises(IPRangeError):
            IPRange("1.1.1.0/33")

    def test_single_ipv4(self):
        self.assertEqual(IPRange("1.1.1.1").choose(), ["1.1.1.1"])
        self.assertEqual(IPRange("1.1.1.1/32").choose(test_all=True), ["1.1.1.1"])

    def test_single_ipv6(self):
        self.assertEqual(IPRange("2606:4700::").choose(), ["2606:4700::"])
        self.assertEqual(IPRange("2606:4700::/128").choose(), ["2606:4700::"])

    def test_ipv4_sampled_one_per_24(self):
        rng = random.Random(1)
        ips = IPRange("10.0.0.0/30").choose(rng=rng)
        self.assertEqual(len(ips), 1)
        self.assertIn(ipaddress.ip_address(ips[0]), ipaddress.ip_network("10.0.0.0/30"))

    def test_ipv4_sampled_across_16(self):
        rng = random.Random(2)
        ips = IPRange("172.16.0.0/16").choose(rng=rng)
        self.assertEqual(len(ips), 256)
        third_octets = [int(ip.split(".")[2]) for ip in ips]
        self.assertEqual(third_octets, list(range(256)))
        network = ipaddress.ip_network("172.16.0.0/16")
        for ip in ips:
            self.assertIn(ipaddress.ip_address(ip), network)

    def test_ipv4_test_all(self):
        ips = IPRange("10.0.0.0/30").choose(test_all=True)
        self.assertEqual(ips, ["10.0.0.0", "10.0.0.1", "10.0.0.2", "10.0.0.3"])

    def test_ipv4_test_all_24(self):
        ips = IPRange("1.1.1.0/24").choose(test_all=True)
        self.assertEqual(len(ips), 256)
        self.assertEqual(ips[0], "1.1.1.0")
        self.assertEqual(ips[-1], "1.1.1.255")

    def test_ipv6_sampled_stays_in_network(self):
        rng = random.Random(3)
        network = ipaddress.ip_network("2606:4700::/112")
        ips = IPRange("2606:4700::/112").choose(rng=rng)
        self.assertGreaterEqual(len(ips), 1)
        for ip in ips:
            self.assertIn(ipaddress.ip_address(ip), network)

    def test_ipv6_sampled_scatters(self):
        rng = random.Random(4)
        network = ipaddress.ip_network("2606:4700::/96")
        ips = IPRange("2606:4700::/96").choose(rng=rng)
        self.assertGreater(len(ips), 1)
        for ip in ips:
            self.assertIn(ipaddress.ip_address(ip), network)


class TestLoadIPRanges(unittest.TestCase):

    def test_mixed_specs(self):
        rng = random.Random(5)
        ips = load_ip_ranges(["1.1.1.1", "10.0.0.0/30", "2606:4700::"], rng=rng)
        self.assertEqual(len(ips), 3)
        self.assertEqual(ips[0], "1.1.1.1")
        self.assertEqual(ips[2], "2606:4700::")

    def test_bad_spec_aborts(self):
        with self.assertRaises(IPRangeError):
            load_ip_ranges(["1.1.1.1", "bad/line"])

    def test_split_ip_text(self):
        self.assertEqual(split_ip_text(" 1.1.1.1, ,2.2.2.0/24 ,"), ["1.1.1.1", "2.2.2.0/24"])

    def test_read_ip_specs_prefers_text(self):
        config = RangeConfig(ip_file="does-not-exist.txt", ip_text="1.1.1.1,1.0.0.1")
        self.assertEqual(read_ip_specs(config), ["1.1.1.1", "1.0.0.1"])

    def test_read_ip_specs_from_file(self):
        with tempfile.NamedTemporaryFile("w", suffix=".txt", delete=False, encoding="utf-8") as f:
            f.write("1.1.1.0/24\n\n  2606:4700::/32  \n")
            path = f.name
        try:
            self.assertEqual(read_ip_specs(RangeConfig(ip_file=path)), ["1.1.1.0/24", "2606:4700::/32"])
        finally:
            os.remove(path)

    def test_missing_file_raises(self):
        with self.assertRaises(OSError):
            read_ip_specs(RangeConfig(ip_file="/nonexistent/ip.txt"))


if __name__ == "__main__":
    unittest.main()
