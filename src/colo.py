"""
地区码识别模块

从 CDN 响应头中提取节点所在地区码 (IATA 机场三字码或二字国家/城市码)。

支持的 CDN (按匹配优先级):
- Cloudflare: cf-ray: 7bd32409eda7b020-LAX
- AWS CloudFront: x-amz-cf-pop: SIN52-P1
- Fastly: x-served-by: cache-fra-etou8220141-FRA (取最后一个)
- CDN77: x-77-pop: frankfurtDE
- Bunny CDN: server: BunnyCDN-TW1-1121
- Gcore: x-id-fe: fr5-hw-edge-gc17
"""

import re
from typing import FrozenSet, Mapping, Optional

IATA_CODE_RE = re.compile(r"[A-Z]{3}")
COUNTRY_CODE_RE = re.compile(r"[A-Z]{2}")
GCORE_CODE_RE = re.compile(r"^[a-z]{2}")

BUNNY_PREFIX = "BunnyCDN-"


def _get(headers: Mapping[str, str], name: str) -> str:
    # requests 的响应头不区分大小写，普通 dict 则逐个比较
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    return (value or "").strip()


def _find(pattern: re.Pattern, value: str) -> str:
    match = pattern.search(value)
    return match.group(0) if match else ""


def get_header_colo(headers: Mapping[str, str]) -> str:
    """
    从响应头中提取地区码

    Args:
        headers: 响应头

    Returns:
        地区码，未识别时返回空字符串
    """
    ray = _get(headers, "cf-ray")
    if ray:
        return _find(IATA_CODE_RE, ray.rsplit("-", 1)[-1])

    pop = _get(headers, "x-amz-cf-pop")
    if pop:
        return _find(IATA_CODE_RE, pop)

    served_by = _get(headers, "x-served-by")
    if served_by:
        codes = IATA_CODE_RE.findall(served_by)
        return codes[-1] if codes else ""

    cdn77_pop = _get(headers, "x-77-pop")
    if cdn77_pop:
        return _find(COUNTRY_CODE_RE, cdn77_pop)

    server = _get(headers, "server")
    if server.startswith(BUNNY_PREFIX):
        return _find(COUNTRY_CODE_RE, server[len(BUNNY_PREFIX):])

    gcore = _get(headers, "x-id-fe")
    if gcore:
        return _find(GCORE_CODE_RE, gcore).upper()

    return ""


def parse_colo_filter(text: str) -> Optional[FrozenSet[str]]:
    """将 "lax,sea" 形式的地区码白名单转为大写集合，未指定时返回 None"""
    if not text:
        return None
    colos = frozenset(c.strip().upper() for c in text.split(",") if c.strip())
    return colos or None


def filter_colo(colo: str, allowed: Optional[FrozenSet[str]]) -> str:
    """地区码在白名单内 (或未设置白名单) 时原样返回，否则返回空字符串"""
    if not colo:
        return ""
    if allowed is None:
        return colo
    return colo if colo in allowed else ""
