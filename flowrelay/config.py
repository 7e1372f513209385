"""
中继配置

配置由宿主进程在启动中继时提供，也可以从 YAML 文件加载。
核心只读取配置，不负责持久化。

配置文件示例:

    proxy:
      host: 192.168.1.68
      socks_port: 6153
      http_port: 6152

    apps:
      - bundle_identifier: com.google.Chrome
        name: Chrome
        rule: proxy
      - bundle_identifier: com.example.Tracker
        rule: reject
        enabled: true

    relay:
      handshake_timeout: 10
      connect_timeout: 10
      stats_interval: 60

    logging:
      level: INFO
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from .flow import ProxyEndpoint


class AppRule(str, Enum):
    """应用规则"""
    PROXY = 'proxy'
    DIRECT = 'direct'
    REJECT = 'reject'


@dataclass
class AppEntry:
    """应用条目"""
    bundle_identifier: str  # 应用标识
    name: str = ''  # 显示名称
    rule: AppRule = AppRule.PROXY  # 规则
    enabled: bool = True  # 是否启用

    def __post_init__(self):
        if not isinstance(self.rule, AppRule):
            self.rule = AppRule(str(self.rule).lower())


def rules_from_apps(apps: Iterable[AppEntry]):
    """
    从应用列表计算代理集合和拒绝集合

    只有启用的条目参与计算；直连条目不进入任何集合。

    返回:
        (proxy_apps, reject_apps)
    """
    proxy_apps = set()
    reject_apps = set()
    for app in apps:
        if not app.enabled:
            continue
        if app.rule == AppRule.PROXY:
            proxy_apps.add(app.bundle_identifier)
        elif app.rule == AppRule.REJECT:
            reject_apps.add(app.bundle_identifier)
    return proxy_apps, reject_apps


@dataclass
class RelayConfig:
    """中继配置"""
    proxy_host: str = '127.0.0.1'  # SOCKS5 代理地址
    socks_port: int = 7891  # SOCKS5 代理端口
    http_port: int = 6152  # HTTP 代理端口（仅用于 proxy_url）
    proxy_apps: Set[str] = field(default_factory=set)  # 需要代理的应用，为空表示全部代理
    reject_apps: Set[str] = field(default_factory=set)  # 需要拒绝的应用
    handshake_timeout: float = 10.0  # 握手读取超时（秒）
    connect_timeout: float = 10.0  # 连接代理超时（秒）
    chunk_size: int = 65536  # TCP 读取块大小
    stats_interval: float = 60.0  # 统计报告间隔（秒）

    def __post_init__(self):
        self.proxy_apps = set(self.proxy_apps or ())
        self.reject_apps = set(self.reject_apps or ())
        for name in ('socks_port', 'http_port'):
            value = getattr(self, name)
            if not isinstance(value, int) or not 0 <= value <= 65535:
                raise ValueError(f"{name} 超出范围 0-65535: {value}")
        if self.handshake_timeout <= 0 or self.connect_timeout <= 0:
            raise ValueError("超时时间必须大于 0")

    @property
    def proxy_endpoint(self) -> ProxyEndpoint:
        return ProxyEndpoint(self.proxy_host, self.socks_port)

    @property
    def proxy_url(self) -> str:
        """获取代理 URL"""
        return f"socks5://{self.proxy_host}:{self.socks_port}"

    @classmethod
    def from_apps(cls, apps: Iterable[AppEntry], **kwargs) -> 'RelayConfig':
        proxy_apps, reject_apps = rules_from_apps(apps)
        return cls(proxy_apps=proxy_apps, reject_apps=reject_apps, **kwargs)

    def with_options(self, options: Optional[Dict[str, Any]]) -> 'RelayConfig':
        """
        应用启动选项

        启动选项（proxyHost / socksPort）优先于配置文件中的值。

        参数:
            options: 启动选项字典，可为 None

        返回:
            新的 RelayConfig
        """
        if not options:
            return self
        changes = {}
        if options.get('proxyHost'):
            changes['proxy_host'] = str(options['proxyHost'])
        if options.get('socksPort') is not None:
            changes['socks_port'] = int(options['socksPort'])
        if options.get('proxyApps') is not None:
            changes['proxy_apps'] = set(options['proxyApps'])
        if options.get('rejectApps') is not None:
            changes['reject_apps'] = set(options['rejectApps'])
        return replace(self, **changes)


def _parse_apps(items: List[Any]) -> List[AppEntry]:
    apps = []
    for item in items or []:
        if isinstance(item, dict):
            # 完整格式
            apps.append(AppEntry(
                bundle_identifier=item['bundle_identifier'],
                name=item.get('name', ''),
                rule=item.get('rule', 'proxy'),
                enabled=item.get('enabled', True)
            ))
        elif isinstance(item, str):
            # 简单格式: 仅应用标识，按代理处理
            apps.append(AppEntry(bundle_identifier=item))
    return apps


def config_from_dict(data: Dict[str, Any]) -> RelayConfig:
    """
    从字典构造配置

    参数:
        data: 通常是 YAML 文件的内容

    返回:
        RelayConfig
    """
    data = data or {}
    proxy = data.get('proxy', {}) or {}
    relay = data.get('relay', {}) or {}

    proxy_apps, reject_apps = rules_from_apps(_parse_apps(data.get('apps', [])))
    proxy_apps.update(data.get('proxy_apps', []) or [])
    reject_apps.update(data.get('reject_apps', []) or [])

    defaults = RelayConfig()
    return RelayConfig(
        proxy_host=proxy.get('host', defaults.proxy_host),
        socks_port=int(proxy.get('socks_port', defaults.socks_port)),
        http_port=int(proxy.get('http_port', defaults.http_port)),
        proxy_apps=proxy_apps,
        reject_apps=reject_apps,
        handshake_timeout=float(relay.get('handshake_timeout', defaults.handshake_timeout)),
        connect_timeout=float(relay.get('connect_timeout', defaults.connect_timeout)),
        chunk_size=int(relay.get('chunk_size', defaults.chunk_size)),
        stats_interval=float(relay.get('stats_interval', defaults.stats_interval)),
    )


def load_config(path: str) -> RelayConfig:
    """
    从 YAML 文件加载配置，文件不存在时返回默认配置

    参数:
        path: 配置文件路径

    异常:
        ValueError: 文件格式错误或配置项无效
    """
    import yaml

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return RelayConfig()
    except yaml.YAMLError as e:
        raise ValueError(f"配置文件格式错误 {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"配置文件顶层必须是映射: {path}")
    try:
        return config_from_dict(data)
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"配置项无效 {path}: {e!r}") from e
