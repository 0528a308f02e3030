"""
SOCKS5 连接器的日志配置

库代码里的模块各自用 logging.getLogger('socks-connect-*') 记录日志，
不自己安装处理器。应用（例如命令行工具）调用 LoggerManager().initialize()
一次，决定日志写到控制台还是文件、用什么级别，以及每行带哪些连接上下文。

日志配置来源（后者优先）:
    config.yaml 的 logging 段
    LOG_LEVEL, LOG_DIR, LOG_FILE, LOG_MAX_BYTES, LOG_BACKUP_COUNT,
    LOG_ROTATION_TYPE, LOG_FORMAT, LOG_ENABLE_CONSOLE, LOG_ENABLE_FILE
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


@dataclass
class LogConfig:
    """
    日志系统的设置

    默认只输出到标准错误；enable_file 打开后写入 log_dir/log_file，
    rotation_type 为 size（按 max_bytes 切分）、date（每天午夜切分）或 none。
    context_fields 决定每行日志 [...] 中出现哪些连接上下文。
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks-connect.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    context_fields: List[str] = field(default_factory=lambda: ["proxy", "target", "attempt"])


def _env_bool(name: str, default) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


class ContextFilter(logging.Filter):
    """
    把当前连接的上下文（代理、目标、尝试次数）写进 record.context

    未设置的字段显示为 "-"，保证格式字符串里的 %(context)s 总能展开。
    """

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def clear_context(self):
        self.context_data.clear()

    def filter(self, record):
        record.context = " | ".join(
            f"{name}={self.context_data.get(name, '-')}" for name in self.context_fields
        )
        return True


class LogFormatter(logging.Formatter):
    """按级别给 levelname 上色的格式化器，只在终端上启用颜色"""

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 没经过 ContextFilter 的记录（例如来自其他处理器）
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.LEVEL_COLORS:
            record.levelname = f"{self.LEVEL_COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    进程内唯一的日志管理器

    initialize() 会替换根日志记录器上的处理器，重复调用以最后一次为准。
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self._initialized = True

    def load_config_from_file(self, config_file: str) -> LogConfig:
        """
        读取配置文件的 logging 段，再叠加 LOG_* 环境变量

        文件不存在或不是合法的 YAML 时只使用环境变量和默认值，
        配置文件本身的错误由 ConnectorConfig 报告。
        """
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except (FileNotFoundError, yaml.YAMLError):
            return self.load_config_from_env()
        return self.load_config_from_env(config_data.get('logging') or {})

    def load_config_from_env(self, defaults: Optional[dict] = None) -> LogConfig:
        """
        从环境变量加载日志配置

        Args:
            defaults: 配置文件中的值，环境变量未设置时使用
        """
        defaults = defaults or {}
        base = LogConfig()
        return LogConfig(
            level=os.getenv('LOG_LEVEL', defaults.get('level', base.level)),
            log_dir=os.getenv('LOG_DIR', defaults.get('log_dir', base.log_dir)),
            log_file=os.getenv('LOG_FILE', defaults.get('log_file', base.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', defaults.get('max_bytes', base.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', defaults.get('backup_count', base.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', defaults.get('rotation_type', base.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', defaults.get('format_string', base.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', defaults.get('enable_console', base.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', defaults.get('enable_file', base.enable_file)),
            context_fields=defaults.get('context_fields', base.context_fields),
        )

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        按 config、config_file、环境变量的顺序取得配置并安装处理器
        """
        if config:
            self.config = config
        elif config_file:
            self.config = self.load_config_from_file(config_file)
        else:
            self.config = self.load_config_from_env()

        level = getattr(logging, self.config.level.upper(), logging.INFO)
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(LogFormatter(self.config.format_string, DATE_FORMAT,
                                              use_color=sys.stderr.isatty()))
            self._add_handler(root_logger, handler, level)

        if self.config.enable_file:
            self._add_handler(root_logger, self._make_file_handler(), level)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler, level: int):
        # 过滤器挂在处理器上，子日志记录器传播上来的记录也会带上上下文
        handler.setLevel(level)
        handler.addFilter(self.context_filter)
        logger.addHandler(handler)

    def _make_file_handler(self) -> logging.Handler:
        path = Path(self.config.log_dir) / self.config.log_file
        path.parent.mkdir(parents=True, exist_ok=True)

        rotation = self.config.rotation_type
        if rotation == 'size':
            handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count, encoding='utf-8')
        elif rotation == 'date':
            handler = logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', backupCount=self.config.backup_count, encoding='utf-8')
        else:
            handler = logging.FileHandler(path, encoding='utf-8')

        handler.setFormatter(LogFormatter(self.config.format_string, DATE_FORMAT))
        return handler

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)

    def clear_context(self):
        if self.context_filter:
            self.context_filter.clear_context()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def add_context(**kwargs):
    """设置之后每行日志都会带上的连接上下文，例如 proxy=..., target=..."""
    LoggerManager().add_context(**kwargs)


def clear_context():
    LoggerManager().clear_context()
