"""
指定 IP 的 HTTP 会话

测速地址中的域名照常用于 Host 头和 TLS SNI，但 TCP 连接固定发往
待测速的 IP 和端口，不做 DNS 解析。
"""

from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.util import connection

USER_AGENT = ("Mozilla/5.0 (Macintosh; Intel Mac OS X 10_12_6) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/98.0.4758.80 Safari/537.36")


class _PinnedConnectionMixin:
    pinned_address = None

    def _new_conn(self):
        return connection.create_connection(
            self.pinned_address,
            self.timeout,
            source_address=self.source_address,
            socket_options=self.socket_options,
        )


class PinnedAddressAdapter(HTTPAdapter):
    """所有连接都拨向 address 的 HTTPAdapter"""

    def __init__(self, address, **kwargs):
        # HTTPAdapter.__init__ 会调用 init_poolmanager，需先记录地址
        self.address = address
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        attrs = {"pinned_address": self.address}
        http_conn = type("PinnedHTTPConnection", (_PinnedConnectionMixin, HTTPConnection), attrs)
        https_conn = type("PinnedHTTPSConnection", (_PinnedConnectionMixin, HTTPSConnection), attrs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": type("PinnedHTTPConnectionPool", (HTTPConnectionPool,), {"ConnectionCls": http_conn}),
            "https": type("PinnedHTTPSConnectionPool", (HTTPSConnectionPool,), {"ConnectionCls": https_conn}),
        }


def create_pinned_session(ip: str, port: int) -> Session:
    """
    创建连接固定到 (ip, port) 的会话

    忽略环境变量中的代理设置，保证请求直连待测速的 IP。
    """
    session = Session()
    session.trust_env = False
    adapter = PinnedAddressAdapter((ip, port))
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT})
    return session
