"""
Society Voting - メインアプリケーション
Flask + Flask-SocketIO による組合再開発の投票 API
"""
import click
from flask import Blueprint, Flask, current_app, jsonify, request, session
from flask_socketio import SocketIO, emit, join_room, leave_room
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from config import Config
from core.errors import VotingError
from core.voting import VotingService
from models import DeveloperProposal, RedevelopmentProject, Society, SocietyMember, db
from services.notifier import Notifier, project_room
from utils.logger import get_logger
from utils.timeutils import utcnow

logger = get_logger("app")

socketio = SocketIO()
api = Blueprint("voting", __name__)


def _socketio_emit(event, data, room):
    socketio.emit(event, data, to=room)


# ============================================================
# アプリケーションファクトリ
# ============================================================
def create_app(config_object=Config, clock=None) -> Flask:
    """
    Args:
        config_object: Config クラス（テストでは TestConfig）
        clock: 現在時刻を返す関数（省略時は utcnow）
    """
    app = Flask(__name__)
    app.config.from_object(config_object)

    db.init_app(app)
    with app.app_context():
        db.create_all()

    socketio.init_app(
        app,
        cors_allowed_origins=app.config["CORS_ALLOWED_ORIGINS"],
        async_mode=app.config["SOCKETIO_ASYNC_MODE"],
    )

    notifier = Notifier(
        emit_callback=_socketio_emit,
        webhook_url=app.config.get("NOTIFY_WEBHOOK_URL", ""),
    )
    app.extensions["voting_service"] = VotingService(
        config=config_object,
        notifier=notifier,
        clock=clock or utcnow,
    )

    app.register_blueprint(api)
    _register_error_handlers(app)
    _register_commands(app)
    return app


def _service() -> VotingService:
    return current_app.extensions["voting_service"]


def _user_id():
    """認証済み利用者 ID（上流ゲートウェイが X-User-Id で渡す）"""
    return request.headers.get("X-User-Id") or None


def _client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def _success(data, status_code: int = 200):
    return jsonify({"status": "success", "data": data}), status_code


# ============================================================
# 投票
# ============================================================
@api.route("/redevelopment-projects/<project_id>/votes", methods=["POST"])
def submit_vote(project_id):
    """投票する"""
    result = _service().submit_vote(
        project_id,
        _user_id(),
        request.get_json(silent=True),
        ip_address=_client_ip(),
        user_agent=request.headers.get("User-Agent"),
    )
    return _success(result, 201)


@api.route("/redevelopment-projects/<project_id>/votes", methods=["GET"])
def list_votes(project_id):
    """セッション内の全票（オーナーのみ）"""
    return _success(_service().list_votes(project_id, _user_id(), request.args.get("session")))


@api.route("/redevelopment-projects/<project_id>/votes/<vote_id>/verify", methods=["POST"])
def verify_vote(project_id, vote_id):
    """票の確認（オーナーのみ）"""
    return _success(_service().verify_vote(project_id, _user_id(), vote_id))


@api.route("/redevelopment-projects/<project_id>/votes/me")
def get_my_vote(project_id):
    """自分の票"""
    return _success(_service().get_my_vote(
        project_id,
        _user_id(),
        request.args.get("session"),
        request.args.get("proposal"),
    ))


@api.route("/redevelopment-projects/<project_id>/votes/history")
def get_vote_history(project_id):
    """自分の投票履歴"""
    return _success(_service().list_my_votes(
        project_id,
        _user_id(),
        page=request.args.get("page", 1, type=int),
        limit=request.args.get("limit", 10, type=int),
    ))


@api.route("/redevelopment-projects/<project_id>/votes/statistics")
def get_voting_statistics(project_id):
    """集計"""
    return _success(_service().get_voting_statistics(
        project_id,
        _user_id(),
        request.args.get("session"),
        request.args.get("proposal"),
    ))


# ============================================================
# セッション
# ============================================================
@api.route("/redevelopment-projects/<project_id>/voting/status")
def get_session_status(project_id):
    return _success(_service().get_session_status(project_id, _user_id(), request.args.get("session")))


@api.route("/redevelopment-projects/<project_id>/voting/start", methods=["POST"])
def start_voting(project_id):
    return _success(_service().start_voting(project_id, _user_id(), request.get_json(silent=True)))


@api.route("/redevelopment-projects/<project_id>/voting/close", methods=["POST"])
def close_voting(project_id):
    data = request.get_json(silent=True) or {}
    session_key = data.get("votingSession") if isinstance(data, dict) else None
    return _success(_service().close_voting(project_id, _user_id(), session_key or request.args.get("session")))


@api.route("/redevelopment-projects/<project_id>/voting/results")
def get_final_results(project_id):
    return _success(_service().get_final_results(project_id, _user_id(), request.args.get("session")))


# ============================================================
# 提案
# ============================================================
@api.route("/redevelopment-projects/<project_id>/proposals", methods=["POST"])
def submit_proposal(project_id):
    return _success(_service().submit_proposal(project_id, _user_id(), request.get_json(silent=True)), 201)


@api.route("/redevelopment-projects/<project_id>/proposals", methods=["GET"])
def list_proposals(project_id):
    return _success(_service().list_proposals(project_id, _user_id()))


@api.route("/redevelopment-projects/<project_id>/proposals/<proposal_id>/review", methods=["POST"])
def review_proposal(project_id, proposal_id):
    return _success(_service().review_proposal(
        project_id, _user_id(), proposal_id, request.get_json(silent=True)
    ))


@api.route("/redevelopment-projects/<project_id>/proposals/<proposal_id>/withdraw", methods=["POST"])
def withdraw_proposal(project_id, proposal_id):
    return _success(_service().withdraw_proposal(project_id, _user_id(), proposal_id))


# ============================================================
# エラーハンドラ
# ============================================================
def _register_error_handlers(app: Flask):

    @app.errorhandler(VotingError)
    def handle_voting_error(e: VotingError):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(e: SQLAlchemyError):
        db.session.rollback()
        logger.exception("ストレージエラー: %s", type(e).__name__)
        return jsonify({
            "status": "error",
            "error": "Storage is temporarily unavailable, please retry",
            "errorCode": "STORAGE_UNAVAILABLE",
        }), 503

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({
            "status": "error",
            "error": e.description,
            "errorCode": e.name.upper().replace(" ", "_"),
        }), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e: Exception):
        db.session.rollback()
        logger.exception("予期しないエラー: %s", e)
        return jsonify({
            "status": "error",
            "error": "Internal server error",
            "errorCode": "INTERNAL_ERROR",
        }), 500


# ============================================================
# WebSocket イベント
# ============================================================
@socketio.on("connect")
def handle_connect(auth=None):
    """クライアント接続時（利用者 ID はヘッダーか auth で受け取る）"""
    user_id = request.headers.get("X-User-Id")
    if not user_id and isinstance(auth, dict):
        user_id = auth.get("userId")
    session["user_id"] = user_id
    logger.info("クライアント接続: %s", request.sid)


@socketio.on("disconnect")
def handle_disconnect(*args):
    logger.info("クライアント切断: %s", request.sid)


@socketio.on("join_project")
def handle_join_project(data):
    """プロジェクトルームに参加する（関係者のみ）"""
    project_id = data.get("projectId") if isinstance(data, dict) else None
    if not _service().can_follow(project_id, session.get("user_id")):
        emit("error", {"message": "Access denied to this project", "projectId": project_id})
        return
    join_room(project_room(project_id))
    emit("joined_project", {"projectId": project_id})


@socketio.on("leave_project")
def handle_leave_project(data):
    project_id = data.get("projectId") if isinstance(data, dict) else None
    if project_id:
        leave_room(project_room(project_id))
        emit("left_project", {"projectId": project_id})


# ============================================================
# CLI コマンド
# ============================================================
def _register_commands(app: Flask):

    @app.cli.command("init-db")
    def init_db():
        """テーブルを作成する"""
        db.create_all()
        click.echo("Database initialized.")

    @app.cli.command("seed-demo")
    @click.option("--members", default=10, show_default=True, help="作成する組合員数")
    def seed_demo(members):
        """デモ用の組合・組合員・プロジェクト・提案を投入する"""
        society = Society(name="Shanti Niketan CHS")
        db.session.add(society)
        db.session.flush()

        db.session.add(SocietyMember(society_id=society.id, user_id="owner-1", role="owner"))
        for i in range(1, members + 1):
            db.session.add(SocietyMember(society_id=society.id, user_id=f"member-{i}"))

        project = RedevelopmentProject(
            society_id=society.id,
            owner_id="owner-1",
            title="Building A redevelopment",
            status="proposals_received",
        )
        db.session.add(project)
        db.session.flush()

        for n, (corpus, rent, fsi) in enumerate([(5000000, 25000, 2.5), (4200000, 30000, 3.0)], start=1):
            db.session.add(DeveloperProposal(
                project_id=project.id,
                developer_id=f"developer-{n}",
                title=f"Proposal {n}",
                corpus_amount=corpus,
                rent_amount=rent,
                fsi=fsi,
                timeline="36 months",
            ))
        db.session.commit()

        click.echo(f"Seeded society {society.id} and project {project.id} with {members} members.")
