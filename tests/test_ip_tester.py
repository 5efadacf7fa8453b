"""延迟测速模块的单元测试，使用本机监听端口代替真实节点"""

import socket
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from ip_tester import PingTester
from settings import PingConfig


def closed_port() -> int:
    """返回一个当前无人监听的本机端口"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class _ColoHandler(BaseHTTPRequestHandler):
    status = 200
    colo_header = ("cf-ray", "7bd32409eda7b020-LAX")

    def do_HEAD(self):
        self.send_response(self.status)
        self.send_header(*self.colo_header)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format, *args):
        pass


class TestPingConfig(unittest.TestCase):
    """参数越界时重置为默认值"""

    def test_valid_values(self):
        config = PingConfig(routines=500, port=8443, ping_times=6).checked()
        self.assertEqual((config.routines, config.port, config.ping_times), (500, 8443, 6))

    def test_defaults_restored(self):
        cases = [
            (PingConfig(routines=0), "routines", 200),
            (PingConfig(routines=-100), "routines", 200),
            (PingConfig(routines=5000), "routines", 1000),
            (PingConfig(port=0), "port", 443),
            (PingConfig(port=65535), "port", 443),
            (PingConfig(ping_times=0), "ping_times", 4),
            (PingConfig(httping_status_code=42), "httping_status_code", 0),
            (PingConfig(url=""), "url", "https://cf.xiu2.xyz/url"),
        ]
        for config, name, expected in cases:
            with self.subTest(name=name):
                self.assertEqual(getattr(config.checked(), name), expected)


class TestTCPing(unittest.TestCase):

    def setUp(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(128)
        self.port = self.server.getsockname()[1]

    def tearDown(self):
        self.server.close()

    def test_reachable(self):
        tester = PingTester(PingConfig(port=self.port, ping_times=3, routines=4))
        results = tester.run(["127.0.0.1"])
        self.assertEqual(len(results), 1)
        r = results[0]
        self.assertEqual(r.ip, "127.0.0.1")
        self.assertEqual(r.sended, 3)
        self.assertEqual(r.received, 3)
        self.assertEqual(r.loss_rate, 0.0)
        self.assertGreaterEqual(r.delay, 0.0)
        self.assertEqual(r.colo, "")

    def test_unreachable_discarded(self):
        tester = PingTester(PingConfig(port=closed_port(), ping_times=2))
        self.assertEqual(tester.run(["127.0.0.1"]), [])

    def test_empty_input(self):
        self.assertEqual(PingTester(PingConfig()).run([]), [])

    def test_progress_counts(self):
        calls = []
        tester = PingTester(PingConfig(port=self.port, ping_times=1, routines=2),
                            lambda completed, total, able: calls.append((completed, total, able)))
        tester.run(["127.0.0.1", "127.0.0.1", "127.0.0.1"])
        self.assertEqual(len(calls), 3)
        self.assertEqual(calls[-1], (3, 3, 3))
        self.assertEqual(sorted(c[0] for c in calls), [1, 2, 3])

    def test_unexpected_error_still_counted(self):
        calls = []
        tester = PingTester(PingConfig(port=self.port, ping_times=1, routines=2),
                            lambda completed, total, able: calls.append((completed, total, able)))
        original = tester.check_connection

        def flaky(ip):
            if ip == "127.0.0.2":
                raise RuntimeError("boom")
            return original(ip)

        tester.check_connection = flaky
        with self.assertLogs("ip_tester", level="ERROR"):
            results = tester.run(["127.0.0.1", "127.0.0.2", "127.0.0.1"])
        self.assertEqual([r.ip for r in results], ["127.0.0.1", "127.0.0.1"])
        self.assertEqual(len(calls), 3)
        self.assertEqual(max(c[0] for c in calls), 3)
        self.assertEqual(calls[-1][1:], (3, 2))

    def test_bounded_concurrency(self):
        tester = PingTester(PingConfig(port=self.port, ping_times=1, routines=2))
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}
        original = tester.check_connection

        def tracked(ip):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            try:
                return original(ip)
            finally:
                with lock:
                    state["active"] -= 1

        tester.check_connection = tracked
        results = tester.run(["127.0.0.1"] * 10)
        self.assertEqual(len(results), 10)
        self.assertLessEqual(state["peak"], 2)


class TestHTTPing(unittest.TestCase):

    def start_server(self, handler):
        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), handler)
        self.port = self.httpd.server_address[1]
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)
        self.thread.start()

    def tearDown(self):
        self.httpd.shutdown()
        self.httpd.server_close()

    def config(self, **kwargs):
        # 域名无需解析，连接固定发往测速 IP
        return PingConfig(port=self.port, ping_times=2, httping=True,
                          url=f"http://speed.example.test:{self.port}/", **kwargs)

    def test_colo_extracted(self):
        self.start_server(_ColoHandler)
        results = PingTester(self.config()).run(["127.0.0.1"])
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].colo, "LAX")
        self.assertEqual(results[0].sended, 2)
        self.assertEqual(results[0].received, 2)

    def test_status_code_rejected(self):
        handler = type("NotFoundHandler", (_ColoHandler,), {"status": 404})
        self.start_server(handler)
        self.assertEqual(PingTester(self.config()).run(["127.0.0.1"]), [])

    def test_custom_status_code(self):
        handler = type("NotFoundHandler", (_ColoHandler,), {"status": 404})
        self.start_server(handler)
        results = PingTester(self.config(httping_status_code=404)).run(["127.0.0.1"])
        self.assertEqual(len(results), 1)

    def test_colo_allow_list(self):
        self.start_server(_ColoHandler)
        self.assertEqual(PingTester(self.config(httping_cf_colo="sea,sjc")).run(["127.0.0.1"]), [])
        results = PingTester(self.config(httping_cf_colo="lax")).run(["127.0.0.1"])
        self.assertEqual([r.colo for r in results], ["LAX"])


if __name__ == "__main__":
    unittest.main()
