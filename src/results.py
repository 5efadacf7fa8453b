"""
测速结果模块

提供测速结果记录、排序、延迟/丢包率过滤以及结果输出功能。

排序规则:
- 延迟测速结果: 丢包率升序，丢包率相同时平均延迟升序
- 下载测速结果: 下载速度降序
"""

import csv
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from settings import MAX_DELAY_MS, MAX_LOSS_RATE, MIN_DELAY_MS, FilterConfig

logger = logging.getLogger(__name__)

CSV_HEADER = ["IP 地址", "已发送", "已接收", "丢包率", "平均延迟", "下载速度(MB/s)", "地区码"]
UNKNOWN_COLO = "N/A"


@dataclass(frozen=True)
class IPResult:
    """
    单个 IP 的测速结果

    丢包率在构造时一次性计算，记录不可变；下载测速阶段通过
    dataclasses.replace() 生成附带下载速度的新记录。

    Attributes:
        ip: IP 地址
        sended: 已发送次数
        received: 已接收 (成功) 次数
        delay: 平均延迟(毫秒)
        colo: 地区码，空字符串表示未知
        download_speed: 下载速度(字节/秒)，未测速时为 0
        loss_rate: 丢包率
    """
    ip: str
    sended: int
    received: int
    delay: float = 0.0
    colo: str = ""
    download_speed: float = 0.0
    loss_rate: float = field(init=False)

    def __post_init__(self):
        loss_rate = (self.sended - self.received) / self.sended if self.sended > 0 else 0.0
        object.__setattr__(self, "loss_rate", loss_rate)

    @property
    def download_speed_mb(self) -> float:
        return self.download_speed / 1024 / 1024

    def to_row(self) -> List[str]:
        """转换为 7 列文本，与 CSV 输出格式一致"""
        return [
            self.ip,
            str(self.sended),
            str(self.received),
            f"{self.loss_rate:.2f}",
            f"{self.delay:.2f}",
            f"{self.download_speed_mb:.2f}",
            self.colo or UNKNOWN_COLO,
        ]


def sort_by_delay(results: Iterable[IPResult]) -> List[IPResult]:
    """按丢包率、延迟排序"""
    return sorted(results, key=lambda r: (r.loss_rate, r.delay))


def sort_by_speed(results: Iterable[IPResult]) -> List[IPResult]:
    """按下载速度降序排序，速度相同时保持原顺序"""
    return sorted(results, key=lambda r: r.download_speed, reverse=True)


def filter_delay(results: Sequence[IPResult], config: FilterConfig) -> List[IPResult]:
    """
    按平均延迟范围过滤

    结果按丢包率优先排序，延迟只在同一丢包率内有序。遇到第一个超出
    延迟上限的记录即停止，其后的记录即使满足条件也不再保留，这是
    假设低丢包率分组内延迟有序的近似过滤。

    延迟范围越界或等于默认范围时不过滤。
    """
    if config.max_delay > MAX_DELAY_MS or config.min_delay < MIN_DELAY_MS:
        return list(results)
    if config.max_delay == MAX_DELAY_MS and config.min_delay == MIN_DELAY_MS:
        return list(results)

    data = []
    for r in results:
        if r.delay > config.max_delay:
            break  # 超出上限，后面的也都不满足
        if r.delay < config.min_delay:
            continue
        data.append(r)
    return data


def filter_loss_rate(results: Sequence[IPResult], config: FilterConfig) -> List[IPResult]:
    """按丢包率上限过滤，遇到第一个超出上限的记录即停止"""
    if config.max_loss_rate >= MAX_LOSS_RATE:
        return list(results)

    data = []
    for r in results:
        if r.loss_rate > config.max_loss_rate:
            break
        data.append(r)
    return data


def filter_results(results: Sequence[IPResult], config: FilterConfig) -> List[IPResult]:
    """依次应用延迟过滤和丢包率过滤"""
    filtered = filter_loss_rate(filter_delay(results, config), config)
    logger.info(f"延迟/丢包过滤后剩余 {len(filtered)}/{len(results)} 个 IP")
    return filtered


def export_csv(results: Sequence[IPResult], path: str) -> bool:
    """
    将结果写入 CSV 文件

    Args:
        results: 测速结果
        path: 输出文件路径，为空或空格时不写入

    Returns:
        是否写入了文件
    """
    if not path.strip() or len(results) == 0:
        return False

    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        writer.writerows(r.to_row() for r in results)

    logger.info(f"结果已保存到: {path} (共 {len(results)} 条记录)")
    return True


def print_results(results: Sequence[IPResult], print_num: int, output: str = "") -> None:
    """以表格形式打印前 print_num 个结果"""
    if print_num == 0:
        return
    if len(results) == 0:
        print("\n[信息] 完整测速结果 IP 数量为 0，跳过输出结果。")
        return

    rows = [r.to_row() for r in results[:print_num]]
    head_format = "{:<16}{:<5}{:<5}{:<5}{:<6}{:<12}{:<5}"
    data_format = "{:<18}{:<8}{:<8}{:<8}{:<10}{:<16}{:<8}"
    # IPv6 地址较长时加宽第一列
    if any(len(row[0]) > 15 for row in rows):
        head_format = "{:<40}{:<5}{:<5}{:<5}{:<6}{:<12}{:<5}"
        data_format = "{:<42}{:<8}{:<8}{:<8}{:<10}{:<16}{:<8}"

    print(head_format.format(*CSV_HEADER))
    for row in rows:
        print(data_format.format(*row))

    if output.strip():
        print(f"\n完整测速结果已写入 {output} 文件，可使用记事本/表格软件查看。")
