"""
下载测速模块

对延迟测速筛选后的 IP 逐个进行下载测速 (同一时间只测一个 IP，避免
相互抢占带宽)，按时间片统计下载量并用指数移动平均 (EWMA) 平滑，
最终按下载速度降序输出。
"""

import logging
import time
from dataclasses import replace
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import requests
import urllib3

from colo import get_header_colo
from http_pinning import create_pinned_session
from results import IPResult, sort_by_speed
from settings import DEFAULT_URL, DownloadConfig

logger = logging.getLogger(__name__)

BUFFER_SIZE = 1024
MAX_REDIRECTS = 10
TIME_SLICES = 100  # 每个时间片为超时时间的 1%

# (已达标数, 目标数)
ProgressCallback = Callable[[int, int], None]


class MovingAverage:
    """
    简单指数移动平均

    平均年龄为 30 个样本，衰减系数 2/(30+1)；第一个样本直接作为初始值。
    """

    AVG_METRIC_AGE = 30.0
    DECAY = 2 / (AVG_METRIC_AGE + 1)

    def __init__(self):
        self.value = 0.0

    def add(self, value: float) -> None:
        if self.value == 0:
            self.value = value
        else:
            self.value = value * self.DECAY + self.value * (1 - self.DECAY)


def plan_test_count(total: int, test_count: int, min_speed: float) -> Tuple[int, int]:
    """
    计算下载测速队列长度和目标数量

    IP 数量不足或指定了速度下限时测速全部 IP。

    Returns:
        (队列长度, 目标数量)
    """
    test_num = test_count
    if total < test_count or min_speed > 0:
        test_num = total
    if test_num < test_count:
        test_count = test_num
    return test_num, test_count


class DownloadTester:
    """下载测速器"""

    def __init__(self, config: DownloadConfig, progress_callback: Optional[ProgressCallback] = None):
        self.config = config.checked()
        self.progress_callback = progress_callback

    def run(self, ip_set: Sequence[IPResult]) -> List[IPResult]:
        """
        逐个 IP 测试下载速度

        Args:
            ip_set: 延迟测速并过滤后的结果

        Returns:
            按下载速度降序排序的结果
        """
        if self.config.disable:
            return list(ip_set)
        if len(ip_set) == 0:
            logger.info("[信息] 延迟测速结果 IP 数量为 0，跳过下载测速。")
            return []

        min_speed = self.config.min_speed
        test_num, test_count = plan_test_count(len(ip_set), self.config.test_count, min_speed)
        logger.info(f"开始下载测速（下限：{min_speed:.2f} MB/s, 数量：{test_count}, 队列：{test_num}）")

        measured = list(ip_set)
        speed_set: List[IPResult] = []
        for i in range(test_num):
            speed, colo = self.download_handler(ip_set[i].ip)
            measured[i] = replace(ip_set[i], download_speed=speed, colo=ip_set[i].colo or colo)
            logger.debug(f"{measured[i].ip} 下载速度: {measured[i].download_speed_mb:.2f} MB/s")

            # 按速度下限过滤结果
            if speed >= min_speed * 1024 * 1024:
                speed_set.append(measured[i])
                if self.progress_callback:
                    self.progress_callback(len(speed_set), test_count)
                if len(speed_set) == test_count:
                    break

        if min_speed == 0:
            # 没有指定速度下限时返回所有数据
            speed_set = measured
        elif len(speed_set) == 0:
            logger.warning("没有满足 下载速度下限 条件的 IP，忽略条件返回所有测速数据。")
            speed_set = measured[:test_num]

        return sort_by_speed(speed_set)

    def _open(self, session: requests.Session, ip: str) -> requests.Response:
        """
        发起下载请求并手动跟随重定向

        重定向时携带上一个地址作为 Referer，使用默认地址时不携带。
        重定向次数过多时返回最后一个重定向响应。
        """
        url = self.config.url
        referer = None
        for _ in range(MAX_REDIRECTS + 1):
            headers = {"Accept-Encoding": "identity"}
            if referer and referer != DEFAULT_URL:
                headers["Referer"] = referer
            response = session.get(url, headers=headers, stream=True,
                                   timeout=self.config.timeout, allow_redirects=False)
            location = session.get_redirect_target(response)
            if not location:
                return response
            referer, url = url, urljoin(url, location)
            response.close()

        logger.debug(f"IP: {ip}, 下载测速地址重定向次数过多，终止测速，下载测速地址: {url}")
        return response

    def download_handler(self, ip: str) -> Tuple[float, str]:
        """
        对单个 IP 执行下载测速

        Returns:
            (下载速度(字节/秒), 地区码)，请求失败或状态码不是 200 时速度为 0
        """
        timeout = self.config.timeout
        with create_pinned_session(ip, self.config.port) as session:
            try:
                response = self._open(session, ip)
            except requests.exceptions.RequestException as e:
                logger.debug(f"IP: {ip}, 下载测速失败，错误信息: {e}, 下载测速地址: {self.config.url}")
                return 0.0, ""

            with response:
                if response.status_code != 200:
                    final_url = response.url
                    if final_url != self.config.url:
                        logger.debug(f"IP: {ip}, 下载测速终止，HTTP 状态码: {response.status_code}, "
                                     f"下载测速地址: {self.config.url}, 出错的重定向后地址: {final_url}")
                    else:
                        logger.debug(f"IP: {ip}, 下载测速终止，HTTP 状态码: {response.status_code}, "
                                     f"下载测速地址: {self.config.url}")
                    return 0.0, ""

                colo = get_header_colo(response.headers)
                speed = self._measure(response, timeout)

        return speed / (timeout / 120), colo

    def _measure(self, response: requests.Response, timeout: float) -> float:
        """按时间片读取响应内容，返回每个时间片下载量的移动平均值"""
        try:
            content_length = int(response.headers.get("Content-Length", -1))
        except ValueError:
            content_length = -1
        time_slice = timeout / TIME_SLICES
        time_start = time.time()
        time_end = time_start + timeout

        content_read = 0
        last_content_read = 0
        time_counter = 1
        next_time = time_start + time_slice * time_counter
        e = MovingAverage()

        while content_length != content_read:
            current_time = time.time()
            if current_time > next_time:
                time_counter += 1
                next_time = time_start + time_slice * time_counter
                e.add(content_read - last_content_read)
                last_content_read = content_read
            # 超时则退出
            if current_time > time_end:
                break

            try:
                # 有多少读多少，慢速响应也不会阻塞超时检查
                chunk = response.raw.read1(BUFFER_SIZE)
            except (urllib3.exceptions.HTTPError, OSError) as err:
                logger.debug(f"下载中断: {err}")
                break

            if not chunk:
                if content_length == -1:  # 文件下载完成但大小未知
                    break
                # 计算最后一个时间片的速度
                last_time_slice = time_start + time_slice * (time_counter - 1)
                elapsed_slices = (current_time - last_time_slice) / time_slice
                if elapsed_slices > 0:
                    e.add((content_read - last_content_read) / elapsed_slices)
                break
            content_read += len(chunk)

        return e.value
