"""
IP延迟测速模块
实现TCP连接延迟测试和HTTP延迟测试(HTTPing)
"""

import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Tuple

import requests

from colo import filter_colo, get_header_colo, parse_colo_filter
from http_pinning import create_pinned_session
from results import IPResult, sort_by_delay
from settings import PingConfig

logger = logging.getLogger(__name__)

TCP_CONNECT_TIMEOUT = 1  # 秒
HTTPING_TIMEOUT = 2  # 秒
HTTPING_DEFAULT_STATUS = (200, 301, 302)

# (已完成数, 总数, 可用数)
ProgressCallback = Callable[[int, int, int], None]


class PingTester:
    """
    延迟测速器

    每个 IP 作为一个独立任务提交到线程池，线程数即同时在测的 IP 数上限。
    全部任务完成后按丢包率、延迟排序返回结果。
    """

    def __init__(self, config: PingConfig, progress_callback: Optional[ProgressCallback] = None):
        self.config = config.checked()
        self.progress_callback = progress_callback
        self.colo_filter = parse_colo_filter(self.config.httping_cf_colo)
        self._lock = threading.Lock()
        self._results: List[IPResult] = []
        self._completed = 0
        self._able = 0

    def run(self, ips: List[str]) -> List[IPResult]:
        """
        对 IP 列表执行延迟测速

        Args:
            ips: 待测速 IP 列表

        Returns:
            按丢包率、延迟排序的结果，全部失败的 IP 不包含在内
        """
        if not ips:
            return []

        mode = "HTTP" if self.config.httping else "TCP"
        logger.info(f"开始延迟测速（模式：{mode}, 端口：{self.config.port}, "
                    f"线程：{self.config.routines}, IP 数量：{len(ips)}）")

        total = len(ips)
        self._results = []
        self._completed = 0
        self._able = 0
        with ThreadPoolExecutor(max_workers=self.config.routines) as executor:
            future_to_ip = {executor.submit(self._ping_handler, ip, total): ip for ip in ips}

            # 等待所有任务完成
            for future in as_completed(future_to_ip):
                ip = future_to_ip[future]
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"测试 {ip} 时发生异常: {e}")

        logger.info(f"延迟测速完成, 可用: {len(self._results)}/{total}")
        return sort_by_delay(self._results)

    def tcping(self, ip: str) -> Tuple[bool, float]:
        """
        执行一次TCP连接测试

        Returns:
            (成功标志, 连接耗时(ms))
        """
        start_time = time.time()
        try:
            sock = socket.create_connection((ip, self.config.port), timeout=TCP_CONNECT_TIMEOUT)
        except OSError as e:
            logger.debug(f"{ip}:{self.config.port} TCP连接失败: {e}")
            return False, 0.0
        duration = (time.time() - start_time) * 1000
        sock.close()
        return True, duration

    def _httping_accepts(self, status_code: int) -> bool:
        if self.config.httping_status_code == 0:
            return status_code in HTTPING_DEFAULT_STATUS
        return status_code == self.config.httping_status_code

    def httping(self, ip: str) -> Tuple[int, float, str]:
        """
        执行 HTTP 延迟测试

        先请求一次获取 HTTP 状态码和地区码，状态码不符合或地区码不在
        白名单内则直接放弃该 IP，否则再循环请求 ping_times 次计算延迟。

        Returns:
            (成功次数, 总延迟(ms), 地区码)
        """
        with create_pinned_session(ip, self.config.port) as session:
            try:
                with session.head(self.config.url, timeout=HTTPING_TIMEOUT,
                                  allow_redirects=False) as response:
                    if not self._httping_accepts(response.status_code):
                        logger.debug(f"{ip} HTTP状态码不符: {response.status_code}")
                        return 0, 0.0, ""
                    colo = get_header_colo(response.headers)
            except requests.exceptions.RequestException as e:
                logger.debug(f"{ip} HTTPing请求失败: {e}")
                return 0, 0.0, ""

            # 只有指定了地区才匹配地区码
            if self.colo_filter is not None:
                colo = filter_colo(colo, self.colo_filter)
                if not colo:
                    logger.debug(f"{ip} 地区码不在指定范围内")
                    return 0, 0.0, ""

            success = 0
            total_delay = 0.0
            for i in range(self.config.ping_times):
                headers = {"Connection": "close"} if i == self.config.ping_times - 1 else {}
                start_time = time.time()
                try:
                    with session.head(self.config.url, headers=headers, timeout=HTTPING_TIMEOUT,
                                      allow_redirects=False):
                        pass
                except requests.exceptions.RequestException:
                    continue
                success += 1
                total_delay += (time.time() - start_time) * 1000

        return success, total_delay, colo

    def check_connection(self, ip: str) -> Tuple[int, float, str]:
        """返回 (成功次数, 总延迟(ms), 地区码)，TCPing 模式不获取地区码"""
        if self.config.httping:
            return self.httping(ip)

        recv = 0
        total_delay = 0.0
        for _ in range(self.config.ping_times):
            ok, delay = self.tcping(ip)
            if ok:
                recv += 1
                total_delay += delay
        return recv, total_delay, ""

    def _ping_handler(self, ip: str, total: int) -> None:
        recv, total_delay, colo = 0, 0.0, ""
        try:
            recv, total_delay, colo = self.check_connection(ip)
        finally:
            # 出现异常的 IP 也计入已完成数，异常由 run() 记录
            with self._lock:
                self._completed += 1
                if recv > 0:
                    self._able += 1
                    self._results.append(IPResult(
                        ip=ip,
                        sended=self.config.ping_times,
                        received=recv,
                        delay=total_delay / recv,
                        colo=colo,
                    ))
                if self.progress_callback:
                    self.progress_callback(self._completed, total, self._able)
