"""ロギング設定

このモジュールは、voice_relay全体のロギング設定を管理します。
ファイル出力とコンソール出力の両方に対応し、日次ローテーションを実装しています。
"""

import logging
import sys
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler


def setup_logging(log_dir: str = "logs", level=logging.INFO):
    """
    ロギング設定を初期化

    Args:
        log_dir: ログファイル出力ディレクトリ（デフォルト: "logs"）
        level: ログレベル（int または "INFO" などのレベル名）

    Returns:
        ルートロガー

    Note:
        - ログファイルは毎日0時にローテーションされます
        - 過去7日分のログが保持されます
        - websockets のフレーム単位ログは WARNING 以上に抑制します
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = TimedRotatingFileHandler(
        log_path / "voice_relay.log",
        when='midnight',
        backupCount=7
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 既存のハンドラーをクリア（重複を防ぐ）
    root_logger.handlers.clear()

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.getLogger("websockets").setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (log_dir={log_dir}, level={logging.getLevelName(level)})")

    return root_logger
