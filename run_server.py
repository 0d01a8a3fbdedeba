"""
投票サーバー実行スクリプト
gevent のモンキーパッチを最初に当ててからアプリケーションを読み込む。
"""
import os

from gevent import monkey
monkey.patch_all()

from app import create_app, socketio  # noqa: E402
from config import Config  # noqa: E402
from utils.logger import get_logger  # noqa: E402

logger = get_logger("run_server")

app = create_app(Config)


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    logger.info("""
    ======================================
      Society Voting
      http://localhost:%d
    ======================================
    """, port)
    socketio.run(app, host="0.0.0.0", port=port, debug=Config.DEBUG)
