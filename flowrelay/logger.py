"""
日志管理

引擎各模块只通过 logging.getLogger('flowrelay.<模块>') 记录日志，
由宿主进程调用 LoggerManager().initialize() 决定输出位置：
- 控制台（终端下彩色）
- 轮转文件（按大小、按天或两者）
- systemd journal（安装了 systemd-python 时可用）

每条记录带有 [app_id=... | flow=... | proxy=...] 上下文。上下文保存在
contextvars 中：调度器为每个流创建的任务各自持有一份副本，
并发的流之间不会串号。

配置来源优先级: 环境变量 LOG_* > 配置文件 logging 段 > 默认值。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


ROOT_LOGGER = 'flowrelay'
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_context: contextvars.ContextVar = contextvars.ContextVar('flowrelay_log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置

    Attributes:
        level: 日志级别
        log_dir: 日志目录，支持 ~
        log_file: 日志文件名
        max_bytes: 按大小轮转的阈值（字节）
        backup_count: 保留的历史文件数
        rotation_type: size / date / both / none
        format_string: 日志格式
        enable_console: 输出到控制台
        enable_file: 输出到文件
        enable_journal: 输出到 systemd journal
        context_fields: 每条记录显示的上下文字段
    """
    level: str = "INFO"
    log_dir: str = "~/.flowrelay/logs"
    log_file: str = "flowrelay.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 10
    rotation_type: str = "both"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: List[str] = field(default_factory=lambda: ['app_id', 'flow', 'proxy'])

    @property
    def numeric_level(self) -> int:
        return getattr(logging, str(self.level).upper(), logging.INFO)


# LogConfig 字段 -> 环境变量
_ENV_NAMES = {
    'level': 'LOG_LEVEL',
    'log_dir': 'LOG_DIR',
    'log_file': 'LOG_FILE',
    'max_bytes': 'LOG_MAX_BYTES',
    'backup_count': 'LOG_BACKUP_COUNT',
    'rotation_type': 'LOG_ROTATION_TYPE',
    'format_string': 'LOG_FORMAT',
    'enable_console': 'LOG_ENABLE_CONSOLE',
    'enable_file': 'LOG_ENABLE_FILE',
    'enable_journal': 'LOG_ENABLE_JOURNAL',
}


def _coerce(value, default):
    """把环境变量或 YAML 中的值转换为默认值的类型"""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(value)
    return value


def config_from_sources(section: Optional[Dict] = None, environ=None) -> LogConfig:
    """
    合并配置文件 logging 段和环境变量

    Args:
        section: 配置文件中的 logging 段
        environ: 环境变量映射，默认 os.environ
    """
    section = section or {}
    environ = os.environ if environ is None else environ
    defaults = LogConfig()
    values = {}
    for f in fields(LogConfig):
        default = getattr(defaults, f.name)
        env_name = _ENV_NAMES.get(f.name)
        if env_name and env_name in environ:
            values[f.name] = _coerce(environ[env_name], default)
        elif f.name in section:
            values[f.name] = _coerce(section[f.name], default)
    return LogConfig(**values)


class ContextFilter(logging.Filter):
    """把当前任务的日志上下文写入 record.context"""

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = list(context_fields or [])

    def filter(self, record):
        data = _context.get()
        record.context = " | ".join(
            f"{name}={data.get(name, '-')}" for name in self.context_fields
        )
        return True


class LogFormatter(logging.Formatter):
    """终端输出时按级别着色，缺少上下文的记录显示 "-" """

    LEVEL_COLORS = {
        logging.DEBUG: 36,
        logging.INFO: 32,
        logging.WARNING: 33,
        logging.ERROR: 31,
        logging.CRITICAL: 35,
    }

    def __init__(self, fmt=None, use_color=False):
        super().__init__(fmt, DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_color else None
        if color is None:
            return super().format(record)
        original = record.levelname
        record.levelname = f"\033[{color}m{original}\033[0m"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _file_handler(config: LogConfig) -> logging.Handler:
    path = Path(config.log_dir).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    filename = path / config.log_file

    if config.rotation_type in ('size', 'both'):
        return logging.handlers.RotatingFileHandler(
            filename, maxBytes=config.max_bytes,
            backupCount=config.backup_count, encoding='utf-8'
        )
    if config.rotation_type == 'date':
        return logging.handlers.TimedRotatingFileHandler(
            filename, when='midnight', backupCount=config.backup_count, encoding='utf-8'
        )
    return logging.FileHandler(filename, encoding='utf-8')


class LoggerManager:
    """
    日志管理器（单例）

    同一进程内多次调用 initialize() 会替换 flowrelay 日志器上的全部处理器。
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.config = None
            cls._instance.context_filter = None
        return cls._instance

    def load_config_from_file(self, config_file: str) -> LogConfig:
        """
        读取 YAML 配置文件的 logging 段，文件缺失或损坏时只使用环境变量
        """
        import yaml

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            return config_from_sources()
        except yaml.YAMLError as e:
            print(f"日志配置文件解析失败: {e}，仅使用环境变量", file=sys.stderr)
            return config_from_sources()
        return config_from_sources(data.get('logging') or {})

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置，优先使用
            config_file: YAML 配置文件路径
        """
        if config is None:
            config = self.load_config_from_file(config_file) if config_file else config_from_sources()
        self.config = config
        self.context_filter = ContextFilter(config.context_fields)

        engine_logger = logging.getLogger(ROOT_LOGGER)
        engine_logger.setLevel(config.numeric_level)
        for handler in list(engine_logger.handlers):
            engine_logger.removeHandler(handler)
            handler.close()

        for handler in self._build_handlers(config):
            handler.setLevel(config.numeric_level)
            # 过滤器挂在处理器上，子模块传播上来的记录也会带上上下文
            handler.addFilter(self.context_filter)
            engine_logger.addHandler(handler)

    @staticmethod
    def _build_handlers(config: LogConfig) -> List[logging.Handler]:
        handlers = []
        if config.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(LogFormatter(config.format_string, use_color=sys.stdout.isatty()))
            handlers.append(console)
        if config.enable_file:
            file_handler = _file_handler(config)
            file_handler.setFormatter(LogFormatter(config.format_string))
            handlers.append(file_handler)
        if config.enable_journal and HAS_JOURNAL:
            handlers.append(JournalHandler(SYSLOG_IDENTIFIER=ROOT_LOGGER))
        return handlers


def get_logger(name: str) -> logging.Logger:
    """返回 flowrelay.<name> 日志器"""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + '.'):
        name = f'{ROOT_LOGGER}.{name}'
    return logging.getLogger(name)


def add_context(**kwargs):
    """为当前任务（及其之后创建的子任务）添加日志上下文"""
    _context.set({**_context.get(), **kwargs})


def clear_context():
    _context.set({})
