"""
CloudflareSpeedTest 配置模块

将测速所需的全部参数收拢为不可变的配置对象，由命令行层构造后
显式传入各个组件，组件内部不读取任何全局状态。

主要功能:
- IP 段来源、延迟测速、延迟/丢包过滤、下载测速、结果输出五组配置
- checked() 校验参数并把越界值重置为默认值
"""

import logging
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)

# IP 段数据
DEFAULT_IP_FILE = "ip.txt"

# 延迟测速
DEFAULT_ROUTINES = 200
MAX_ROUTINES = 1000
DEFAULT_PORT = 443
DEFAULT_PING_TIMES = 4

# 过滤条件 (毫秒)
MIN_DELAY_MS = 0.0
MAX_DELAY_MS = 9999.0
MAX_LOSS_RATE = 1.0

# 下载测速
DEFAULT_URL = "https://cf.xiu2.xyz/url"
DEFAULT_TIMEOUT = 10.0  # 秒
DEFAULT_TEST_COUNT = 10
DEFAULT_MIN_SPEED = 0.0  # MB/s

# 输出
DEFAULT_OUTPUT = "result.csv"
DEFAULT_PRINT_NUM = 10


@dataclass(frozen=True)
class RangeConfig:
    """IP 段来源配置"""
    ip_file: str = DEFAULT_IP_FILE
    ip_text: str = ""  # 逗号分隔的 IP 段，非空时优先于文件
    test_all: bool = False  # 测速全部 IP 而非每个 /24 随机一个

    def checked(self) -> "RangeConfig":
        if not self.ip_file:
            return replace(self, ip_file=DEFAULT_IP_FILE)
        return self


@dataclass(frozen=True)
class PingConfig:
    """延迟测速配置"""
    routines: int = DEFAULT_ROUTINES
    port: int = DEFAULT_PORT
    ping_times: int = DEFAULT_PING_TIMES
    httping: bool = False
    httping_status_code: int = 0  # 0 表示接受 200/301/302
    httping_cf_colo: str = ""  # 逗号分隔的地区码白名单
    url: str = DEFAULT_URL

    def checked(self) -> "PingConfig":
        """
        校验延迟测速参数

        线程数不大于 0 时重置为默认值，超过上限时截断为上限；
        端口、测速次数越界时重置为默认值。

        Returns:
            校验后的新配置
        """
        routines = self.routines
        if routines <= 0:
            routines = DEFAULT_ROUTINES
        elif routines > MAX_ROUTINES:
            routines = MAX_ROUTINES

        port = self.port
        if port <= 0 or port >= 65535:
            port = DEFAULT_PORT

        ping_times = self.ping_times if self.ping_times > 0 else DEFAULT_PING_TIMES

        status_code = self.httping_status_code
        if status_code < 100 or status_code > 599:
            status_code = 0

        return replace(
            self,
            routines=routines,
            port=port,
            ping_times=ping_times,
            httping_status_code=status_code,
            url=self.url or DEFAULT_URL,
        )


@dataclass(frozen=True)
class FilterConfig:
    """延迟与丢包率过滤配置 (延迟单位: 毫秒)"""
    min_delay: float = MIN_DELAY_MS
    max_delay: float = MAX_DELAY_MS
    max_loss_rate: float = MAX_LOSS_RATE

    def checked(self) -> "FilterConfig":
        # 延迟范围越界在过滤时按不过滤处理，这里只矫正丢包率
        if self.max_loss_rate < 0 or self.max_loss_rate > MAX_LOSS_RATE:
            return replace(self, max_loss_rate=MAX_LOSS_RATE)
        return self


@dataclass(frozen=True)
class DownloadConfig:
    """下载测速配置"""
    url: str = DEFAULT_URL
    timeout: float = DEFAULT_TIMEOUT  # 单个 IP 下载测速最长时间(秒)
    test_count: int = DEFAULT_TEST_COUNT
    min_speed: float = DEFAULT_MIN_SPEED  # 下载速度下限(MB/s)
    disable: bool = False
    port: int = DEFAULT_PORT

    def checked(self) -> "DownloadConfig":
        return replace(
            self,
            url=self.url or DEFAULT_URL,
            timeout=self.timeout if self.timeout > 0 else DEFAULT_TIMEOUT,
            test_count=self.test_count if self.test_count > 0 else DEFAULT_TEST_COUNT,
            min_speed=self.min_speed if self.min_speed > 0 else DEFAULT_MIN_SPEED,
            port=self.port if 0 < self.port < 65535 else DEFAULT_PORT,
        )


@dataclass(frozen=True)
class OutputConfig:
    """结果输出配置"""
    output: str = DEFAULT_OUTPUT  # 为空或空格时不写文件
    print_num: int = DEFAULT_PRINT_NUM  # 为 0 时不打印结果


@dataclass(frozen=True)
class SpeedTestConfig:
    """一次完整测速运行的全部配置"""
    ranges: RangeConfig = field(default_factory=RangeConfig)
    ping: PingConfig = field(default_factory=PingConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    debug: bool = False

    def checked(self) -> "SpeedTestConfig":
        """校验全部子配置，下载测速端口跟随延迟测速端口"""
        ping = self.ping.checked()
        download = replace(self.download, port=ping.port).checked()
        checked = replace(
            self,
            ranges=self.ranges.checked(),
            ping=ping,
            filter=self.filter.checked(),
            download=download,
        )
        logger.debug(f"测速配置: {checked}")
        return checked
