"""
CloudflareSpeedTest - Cloudflare CDN节点测速工具主程序

工作流程:
1. 将 IP 段展开为待测速 IP
2. 并发延迟测速 (TCPing / HTTPing)
3. 按延迟、丢包率过滤
4. 逐个下载测速
5. 输出结果
"""

import argparse
import logging
import sys
from typing import List

from ip_ranges import init_rand_seed, load_ip_ranges, read_ip_specs
from ip_tester import PingTester
from results import IPResult, export_csv, filter_results, print_results
from settings import (
    DEFAULT_IP_FILE,
    DEFAULT_OUTPUT,
    DEFAULT_PING_TIMES,
    DEFAULT_PORT,
    DEFAULT_PRINT_NUM,
    DEFAULT_ROUTINES,
    DEFAULT_TEST_COUNT,
    DEFAULT_TIMEOUT,
    DEFAULT_URL,
    MAX_DELAY_MS,
    MAX_LOSS_RATE,
    MIN_DELAY_MS,
    DownloadConfig,
    FilterConfig,
    OutputConfig,
    PingConfig,
    RangeConfig,
    SpeedTestConfig,
)
from speed_tester import DownloadTester

VERSION = "v2.3.0"

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


class CloudflareSpeedTestApp:
    """测速应用主类"""

    def __init__(self, config: SpeedTestConfig):
        self.config = config.checked()
        # 调试模式输出每个 IP 的失败原因
        if self.config.debug:
            logging.getLogger().setLevel(logging.DEBUG)

    def ping_progress(self, completed: int, total: int, able: int):
        """延迟测速进度回调"""
        # 每 1% 输出一次，避免刷屏
        step = max(1, total // 100)
        if completed % step == 0 or completed == total:
            percentage = (completed / total) * 100
            logger.info(f"[{completed}/{total} {percentage:.1f}%] 可用: {able}")

    def download_progress(self, done: int, target: int):
        """下载测速进度回调"""
        logger.info(f"[{done}/{target}] 下载测速达标")

    def run(self) -> int:
        try:
            logger.info(f"# CloudflareSpeedTest {VERSION}")

            ips = load_ip_ranges(read_ip_specs(self.config.ranges), self.config.ranges.test_all)

            ping_set = PingTester(self.config.ping, self.ping_progress).run(ips)
            ping_set = filter_results(ping_set, self.config.filter)

            speed_set = DownloadTester(self.config.download, self.download_progress).run(ping_set)

            self.output(speed_set)
            return 0

        except KeyboardInterrupt:
            logger.warning("\n用户中断程序")
            return 130
        except Exception as e:
            logger.error(f"程序执行出错: {e}", exc_info=True)
            return 1

    def output(self, speed_set: List[IPResult]):
        """写入结果文件并打印结果"""
        output = self.config.output
        export_csv(speed_set, output.output)
        print_results(speed_set, output.print_num, output.output)


def build_config(args: argparse.Namespace) -> SpeedTestConfig:
    """由命令行参数构造测速配置"""
    return SpeedTestConfig(
        ranges=RangeConfig(
            ip_file=args.ip_file,
            ip_text=args.ip_text,
            test_all=args.test_all,
        ),
        ping=PingConfig(
            routines=args.routines,
            port=args.port,
            ping_times=args.ping_times,
            httping=args.httping,
            httping_status_code=args.httping_code,
            httping_cf_colo=args.cfcolo,
            url=args.url,
        ),
        filter=FilterConfig(
            min_delay=args.min_delay,
            max_delay=args.max_delay,
            max_loss_rate=args.max_loss_rate,
        ),
        download=DownloadConfig(
            url=args.url,
            timeout=args.download_timeout,
            test_count=args.download_num,
            min_speed=args.min_speed,
            disable=args.disable_download,
            port=args.port,
        ),
        output=OutputConfig(
            output=args.output,
            print_num=args.print_num,
        ),
        debug=args.debug,
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='CloudflareSpeedTest - 测试各个 CDN 或网站所有 IP 的延迟和速度，获取最快 IP',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  %(prog)s                                   # 测速 ip.txt 中的全部 IP 段
  %(prog)s -n 500 -t 4                       # 500 线程，每个 IP 延迟测速 4 次
  %(prog)s -tl 200 -tll 40 -tlr 0.2          # 只保留延迟 40~200ms、丢包率 ≤0.2 的 IP
  %(prog)s -httping -cfcolo HKG,KHH,NRT      # HTTPing 模式并只保留指定地区
  %(prog)s -ip 1.1.1.1,2.2.2.2/24 -dd        # 指定 IP 段并禁用下载测速
        """
    )

    # 延迟测速参数
    parser.add_argument('-n', '--routines', type=int, default=DEFAULT_ROUTINES,
                        help=f'延迟测速线程数 (默认: {DEFAULT_ROUTINES}, 最多 1000)')
    parser.add_argument('-t', '--ping-times', type=int, default=DEFAULT_PING_TIMES,
                        help=f'单个 IP 延迟测速次数 (默认: {DEFAULT_PING_TIMES})')
    parser.add_argument('-tp', '--port', type=int, default=DEFAULT_PORT,
                        help=f'测速端口 (默认: {DEFAULT_PORT})')
    parser.add_argument('-httping', '--httping', action='store_true',
                        help='切换为 HTTPing 延迟测速模式')
    parser.add_argument('-httping-code', '--httping-code', type=int, default=0,
                        help='HTTPing 有效状态码 (默认: 200 301 302)')
    parser.add_argument('-cfcolo', '--cfcolo', default='',
                        help='匹配指定地区，逗号分隔，仅 HTTPing 模式可用')

    # 下载测速参数
    parser.add_argument('-url', '--url', default=DEFAULT_URL,
                        help=f'下载测速地址 (默认: {DEFAULT_URL})')
    parser.add_argument('-dn', '--download-num', type=int, default=DEFAULT_TEST_COUNT,
                        help=f'下载测速数量 (默认: {DEFAULT_TEST_COUNT})')
    parser.add_argument('-dt', '--download-timeout', type=float, default=DEFAULT_TIMEOUT,
                        help=f'单个 IP 下载测速最长时间(秒) (默认: {DEFAULT_TIMEOUT:g})')
    parser.add_argument('-dd', '--disable-download', action='store_true',
                        help='禁用下载测速')

    # 筛选参数
    parser.add_argument('-tl', '--max-delay', type=float, default=MAX_DELAY_MS,
                        help=f'平均延迟上限(ms) (默认: {MAX_DELAY_MS:g})')
    parser.add_argument('-tll', '--min-delay', type=float, default=MIN_DELAY_MS,
                        help=f'平均延迟下限(ms) (默认: {MIN_DELAY_MS:g})')
    parser.add_argument('-tlr', '--max-loss-rate', type=float, default=MAX_LOSS_RATE,
                        help=f'丢包率上限 0.00~1.00 (默认: {MAX_LOSS_RATE:.2f})')
    parser.add_argument('-sl', '--min-speed', type=float, default=0.0,
                        help='下载速度下限(MB/s) (默认: 0.00)')

    # IP 段参数
    parser.add_argument('-f', '--ip-file', default=DEFAULT_IP_FILE,
                        help=f'IP 段数据文件 (默认: {DEFAULT_IP_FILE})')
    parser.add_argument('-ip', '--ip-text', default='',
                        help='直接指定 IP 段数据，逗号分隔')
    parser.add_argument('-allip', '--test-all', action='store_true',
                        help='测速全部 IP (仅支持 IPv4)')

    # 输出参数
    parser.add_argument('-p', '--print-num', type=int, default=DEFAULT_PRINT_NUM,
                        help=f'显示结果数量，0 为不显示 (默认: {DEFAULT_PRINT_NUM})')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT,
                        help=f'写入结果文件，空格为不写入 (默认: {DEFAULT_OUTPUT})')

    # 其他参数
    parser.add_argument('-debug', '--debug', action='store_true',
                        help='调试输出模式')
    parser.add_argument('-v', '--version', action='version', version=f'%(prog)s {VERSION}')
    return parser


def main(argv=None):
    """主函数"""
    args = create_parser().parse_args(argv)
    init_rand_seed()
    app = CloudflareSpeedTestApp(build_config(args))
    sys.exit(app.run())


if __name__ == '__main__':
    main()
