"""
IP 段解析模块

将 IP 段文本 (单个 IP 或 CIDR) 展开为待测速的 IP 地址列表。

展开策略:
- IPv4: 逐个遍历网段内的 /24，每个 /24 随机取一个 IP，或在全量模式下取全部 IP
- IPv6: 随机最后两段，并从倒数第三个字节起随机递增，在整个网段内分散取样
- 单个 IP (/32 或 /128) 直接加入自身
"""

import ipaddress
import logging
import random
import time
from typing import Iterable, List, Optional

from settings import RangeConfig

logger = logging.getLogger(__name__)

# 全进程共用的随机数源，只在启动时通过 init_rand_seed() 播种一次
_rand = random.Random()


class IPRangeError(ValueError):
    """IP 段格式无法解析"""


def init_rand_seed() -> None:
    """使用当前时间戳作为随机数种子"""
    _rand.seed(time.time_ns())


def rand_ip_end_with(num: int, rng: Optional[random.Random] = None) -> int:
    """
    生成 [0, num) 范围内的随机数，用于随机 IP 的某一个字节

    num 为 0 时 (例如 /32 这种单独的 IP) 固定返回 0。
    """
    if num == 0:
        return 0
    return (rng or _rand).randrange(num)


def fix_ip(ip: str) -> str:
    """不含子网掩码的单独 IP 补全为 /32 (IPv4) 或 /128 (IPv6)"""
    if "/" in ip:
        return ip
    return ip + ("/128" if ":" in ip else "/32")


class IPRange:
    """
    单个 IP 段的展开状态

    Attributes:
        first_ip: 游标地址 (按字节可变)，初始为输入中的地址本身
        network: 所属网段
    """

    def __init__(self, spec: str):
        self.spec = spec
        try:
            interface = ipaddress.ip_interface(fix_ip(spec))
        except ValueError as e:
            raise IPRangeError(f"无法解析 IP 段 {spec!r}: {e}") from e
        self.network = interface.network
        self.first_ip = bytearray(interface.ip.packed)

    @property
    def is_ipv4(self) -> bool:
        return self.network.version == 4

    @property
    def is_single(self) -> bool:
        return self.network.prefixlen == self.network.max_prefixlen

    def _contains_cursor(self) -> bool:
        return ipaddress.ip_address(bytes(self.first_ip)) in self.network

    def _cursor(self) -> str:
        return str(ipaddress.ip_address(bytes(self.first_ip)))

    def get_ip_range(self):
        """
        返回 IPv4 第四段的最小值及可用主机数量

        主机数超过 255 (掩码空出不止一个字节) 时矫正为 255。
        """
        mask = self.network.netmask.packed
        min_ip = self.first_ip[3] & mask[3]
        total = int(self.network.hostmask)
        hosts = 255 if total > 255 else total
        return min_ip, hosts

    def _ipv4_with_last(self, last: int) -> str:
        a, b, c = self.first_ip[0], self.first_ip[1], self.first_ip[2]
        return f"{a}.{b}.{c}.{last}"

    def choose_ipv4(self, test_all: bool, rng: Optional[random.Random] = None) -> List[str]:
        if self.is_single:
            return [self._cursor()]

        ips = []
        min_ip, hosts = self.get_ip_range()
        while self._contains_cursor():
            if test_all:
                for i in range(hosts + 1):
                    ips.append(self._ipv4_with_last(min_ip + i))
            else:
                ips.append(self._ipv4_with_last(min_ip + rand_ip_end_with(hosts, rng)))

            # 0.0.(X+1).X，逐字节进位
            self.first_ip[2] = (self.first_ip[2] + 1) % 256
            if self.first_ip[2] == 0:
                self.first_ip[1] = (self.first_ip[1] + 1) % 256
                if self.first_ip[1] == 0:
                    self.first_ip[0] = (self.first_ip[0] + 1) % 256
                    if self.first_ip[0] == 0:
                        break  # 已绕回 0.0.0.0
        return ips

    def choose_ipv6(self, rng: Optional[random.Random] = None) -> List[str]:
        if self.is_single:
            return [self._cursor()]

        ips = []
        while self._contains_cursor():
            self.first_ip[15] = rand_ip_end_with(255, rng)
            self.first_ip[14] = rand_ip_end_with(255, rng)
            ips.append(self._cursor())

            # 从倒数第三个字节开始往前随机递增，溢出时继续向前一字节累加
            for i in range(13, -1, -1):
                previous = self.first_ip[i]
                self.first_ip[i] = (previous + rand_ip_end_with(255, rng)) % 256
                if self.first_ip[i] >= previous:
                    break
            else:
                break  # 最高字节也已溢出
        return ips

    def choose(self, test_all: bool = False, rng: Optional[random.Random] = None) -> List[str]:
        if self.is_ipv4:
            return self.choose_ipv4(test_all, rng)
        return self.choose_ipv6(rng)


def load_ip_ranges(specs: Iterable[str], test_all: bool = False,
                   rng: Optional[random.Random] = None) -> List[str]:
    """
    展开全部 IP 段

    Args:
        specs: IP 段文本列表 (已去除首尾空白，不含空行)
        test_all: 是否测速全部 IP
        rng: 随机数源，默认使用全进程共用的随机数源

    Returns:
        IP 地址字符串列表

    Raises:
        IPRangeError: 任意一个 IP 段无法解析时整体中止
    """
    ips: List[str] = []
    count = 0
    for spec in specs:
        ips.extend(IPRange(spec).choose(test_all, rng))
        count += 1
    logger.info(f"从 {count} 个 IP 段生成了 {len(ips)} 个待测速 IP")
    return ips


def split_ip_text(text: str) -> List[str]:
    """按逗号分隔 IP 段文本，跳过空项"""
    return [part.strip() for part in text.split(",") if part.strip()]


def read_ip_file(path: str) -> List[str]:
    """按行读取 IP 段文件，跳过空行"""
    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def read_ip_specs(config: RangeConfig) -> List[str]:
    """优先使用参数指定的 IP 段，否则读取 IP 段文件"""
    if config.ip_text:
        return split_ip_text(config.ip_text)
    return read_ip_file(config.ip_file)
