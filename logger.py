"""
Portal 隧道 - 日志管理模块

功能概述:
本模块提供隧道客户端和服务器共用的日志系统，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、会话上下文）
4. 配置文件 logging 段落和环境变量支持
5. 可选的 systemd journal 输出

控制台日志写入 stderr，stdout 只用于输出连接码。

环境变量（优先于配置文件）:
    LOG_LEVEL, LOG_DIR, LOG_FILE, LOG_MAX_BYTES, LOG_BACKUP_COUNT,
    LOG_ROTATION_TYPE, LOG_FORMAT, LOG_ENABLE_CONSOLE, LOG_ENABLE_FILE,
    LOG_ENABLE_JOURNAL
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_LOG_DIR = os.path.join(os.path.expanduser('~'), '.portal-tunnel', 'logs')
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台（stderr）
        enable_file: 是否输出到文件
        enable_journal: 是否输出到 systemd journal
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = DEFAULT_LOG_DIR
    log_file: str = "portal-tunnel.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: List[str] = field(default_factory=lambda: ["role", "peer", "session_id"])

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None, environ=None) -> 'LogConfig':
        """
        从配置文件的 logging 段落创建，环境变量覆盖文件中的值

        Args:
            data: logging 段落
            environ: 环境变量映射（默认 os.environ）
        """
        environ = os.environ if environ is None else environ
        values = dict(data or {})
        for f in fields(cls):
            raw = environ.get(f"LOG_{f.name.upper()}")
            if raw is None or f.name == 'context_fields':
                continue
            if f.type is bool:
                values[f.name] = raw.lower() in ('1', 'true', 'yes', 'on')
            elif f.type is int:
                values[f.name] = int(raw)
            else:
                values[f.name] = raw
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})


class ContextFilter(logging.Filter):
    """为日志记录添加会话上下文（角色、对端地址、会话 ID）"""

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def clear_context(self):
        self.context_data.clear()

    def filter(self, record):
        if not hasattr(record, 'context'):
            parts = [f"{name}={self.context_data.get(name, '-')}" for name in self.context_fields]
            record.context = " | ".join(parts)
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持终端彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"
        if not self.use_color or record.levelname not in self.COLORS:
            return super().format(record)

        levelname = record.levelname
        record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器（单例）

    管理日志系统的初始化和会话上下文
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

    def initialize(self, config: Optional[LogConfig] = None, debug: bool = False):
        """
        初始化日志系统

        Args:
            config: 日志配置（默认从环境变量读取）
            debug: 强制使用 DEBUG 级别
        """
        self.config = config or LogConfig.from_dict()
        if debug:
            self.config.level = "DEBUG"
        self.context_filter = ContextFilter(self.config.context_fields)

        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        if self.config.enable_console:
            self._add_handler(root_logger, logging.StreamHandler(sys.stderr), sys.stderr.isatty())

        if self.config.enable_file and self._setup_log_directory():
            self._add_handler(root_logger, self._create_file_handler(), False)

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_handler(root_logger, JournalHandler(), False)

        # aioquic 的 DEBUG 日志过于详细
        logging.getLogger('quic').setLevel(max(self._level(), logging.INFO))

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _setup_log_directory(self) -> bool:
        """创建日志目录，失败时禁用文件日志"""
        try:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"无法创建日志目录 {self.config.log_dir}: {e}，已禁用文件日志", file=sys.stderr)
            return False
        return True

    def _create_file_handler(self) -> logging.Handler:
        log_file_path = Path(self.config.log_dir) / self.config.log_file
        if self.config.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        if self.config.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        return logging.FileHandler(filename=log_file_path, encoding='utf-8')

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler, use_color: bool):
        handler.setLevel(self._level())
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=use_color
        ))
        # 过滤器挂在处理器上，子记录器传播上来的记录同样带有上下文
        handler.addFilter(self.context_filter)
        logger.addHandler(handler)

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)

    def clear_context(self):
        if self.context_filter:
            self.context_filter.clear_context()


def setup_logging(config_data: Optional[Dict[str, Any]] = None, debug: bool = False,
                  role: Optional[str] = None) -> LoggerManager:
    """
    初始化日志系统（便捷函数）

    Args:
        config_data: 配置文件的 logging 段落
        debug: 是否启用 DEBUG 级别
        role: 本进程角色（client / server），写入日志上下文

    Returns:
        LoggerManager: 日志管理器
    """
    manager = LoggerManager()
    manager.initialize(LogConfig.from_dict(config_data), debug=debug)
    if role:
        manager.add_context(role=role)
    return manager


def add_context(**kwargs):
    """添加上下文信息（便捷函数）"""
    LoggerManager().add_context(**kwargs)


def clear_context():
    LoggerManager().clear_context()
