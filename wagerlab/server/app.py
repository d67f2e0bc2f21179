from __future__ import annotations

import atexit
import logging
import os
import sys

import flask
import flask_socketio
import numpy as np

from wagerlab.configurations import configuration_constants
from wagerlab.configurations.experiment_config import ExperimentConfig
from wagerlab.server import data_export
from wagerlab.server.ai_mode_rotator import AIModeRotator
from wagerlab.server.connection_registry import ConnectionRegistry
from wagerlab.server.document_store import DocumentStore, InMemoryDocumentStore
from wagerlab.server.errors import ConfigurationError
from wagerlab.server.message_router import MessageRouter
from wagerlab.server.participant_state import ParticipantStateTracker
from wagerlab.server.phase_coordinator import PhaseCoordinator
from wagerlab.server.result_aggregator import ResultAggregator
from wagerlab.server.scheduler import EventletScheduler, TimerScheduler
from wagerlab.server.session_events import SessionEventBus
from wagerlab.server.session_manager import SessionManager
from wagerlab.server.transport import SessionBroadcaster, SocketIOTransport


def setup_logger(name, log_file, level=logging.INFO):
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler = logging.FileHandler(log_file)
    handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.addHandler(handler)
    logger.addHandler(console_handler)
    logger.propagate = False

    return logger


logger = logging.getLogger(__name__)

InboundMessages = configuration_constants.InboundMessages

CONFIG = ExperimentConfig()

# Document store holding sessions, trial records and surveys
STORE: DocumentStore | None = None

# Timers for waiting cohorts and trial phases
SCHEDULER: TimerScheduler | None = None

# Socket ID <-> participant ID, participant ID -> session ID
REGISTRY: ConnectionRegistry | None = None

# Participant state tracker - single source of truth for participant lifecycle states
PARTICIPANT_TRACKER: ParticipantStateTracker | None = None

# Fans session lifecycle events out to the router, coordinator and matchmaker
EVENT_BUS: SessionEventBus | None = None

SESSION_MANAGER: SessionManager | None = None
COORDINATOR: PhaseCoordinator | None = None
AGGREGATOR: ResultAggregator | None = None
ROUTER: MessageRouter | None = None


#######################
# Flask Configuration #
#######################

app = flask.Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("WAGERLAB_SECRET_KEY", "secret!")

app.config["DEBUG"] = os.getenv("FLASK_ENV", "production") == "development"

socketio = flask_socketio.SocketIO(
    app,
    cors_allowed_origins="*",
    logger=app.config["DEBUG"],
)

#######################
# Flask Configuration #
#######################


def build_components(
    config: ExperimentConfig,
    store: DocumentStore | None = None,
    scheduler: TimerScheduler | None = None,
    rng: np.random.Generator | None = None,
) -> MessageRouter:
    """Wire the experiment server for ``config``.

    Raises:
        ConfigurationError: if no AI mode has usable trial content.
    """
    global CONFIG, STORE, SCHEDULER, REGISTRY, PARTICIPANT_TRACKER, EVENT_BUS
    global SESSION_MANAGER, COORDINATOR, AGGREGATOR, ROUTER

    CONFIG = config
    STORE = store if store is not None else InMemoryDocumentStore()
    SCHEDULER = scheduler if scheduler is not None else EventletScheduler()
    REGISTRY = ConnectionRegistry()
    PARTICIPANT_TRACKER = ParticipantStateTracker()
    EVENT_BUS = SessionEventBus()

    rotator = AIModeRotator(STORE, config.content_root, config.ai_modes)
    broadcaster = SessionBroadcaster(SocketIOTransport(socketio), REGISTRY)

    SESSION_MANAGER = SessionManager(
        store=STORE,
        rotator=rotator,
        event_bus=EVENT_BUS,
        scheduler=SCHEDULER,
        registry=REGISTRY,
        participant_state_tracker=PARTICIPANT_TRACKER,
        waiting_duration_s=config.waiting_duration_s,
        group_size=config.group_size,
        rng=rng,
    )
    COORDINATOR = PhaseCoordinator(
        broadcaster=broadcaster,
        scheduler=SCHEDULER,
        event_bus=EVENT_BUS,
        registry=REGISTRY,
        phase_duration_s=config.phase_duration_s,
        chat_duration_s=config.chat_duration_s,
        wager_min=config.wager_min,
        wager_max=config.wager_max,
        default_wager=config.default_wager,
    )
    AGGREGATOR = ResultAggregator(
        store=STORE,
        event_bus=EVENT_BUS,
        scheduler=SCHEDULER,
        participant_state_tracker=PARTICIPANT_TRACKER,
    )
    ROUTER = MessageRouter(
        registry=REGISTRY,
        broadcaster=broadcaster,
        session_manager=SESSION_MANAGER,
        coordinator=COORDINATOR,
        aggregator=AGGREGATOR,
        participant_state_tracker=PARTICIPANT_TRACKER,
        experiment_config=config,
    )

    # Participants hear about a session before its first phase starts
    EVENT_BUS.subscribe(ROUTER)
    EVENT_BUS.subscribe(COORDINATOR)
    EVENT_BUS.subscribe(SESSION_MANAGER)
    EVENT_BUS.subscribe(AGGREGATOR)

    # Cohorts loaded from a snapshot need their wait timers back
    SESSION_MANAGER.restore_wait_timers()

    logger.info(
        f"Experiment {config.experiment_id} ready with AI modes {rotator.ai_modes}"
    )
    return ROUTER


@app.route("/exportCsv")
def export_csv():
    mode = flask.request.args.get("mode")
    try:
        csv_text = data_export.export_csv(STORE, mode)
    except data_export.ExportError as e:
        logger.info(f"[Export] Rejected export request for mode={mode}: {e}")
        return flask.Response(str(e), status=e.status, mimetype="text/plain")
    except Exception:
        logger.exception(f"[Export] Failed to export mode={mode}")
        return flask.Response("Failed to build export", status=500, mimetype="text/plain")

    return flask.Response(
        csv_text,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{mode}_sessions_export.csv"'},
    )


def _dispatch(message_type: str, data):
    ROUTER.handle(flask.request.sid, message_type, data)


@socketio.on(InboundMessages.Register)
def on_register(data):
    _dispatch(InboundMessages.Register, data)


@socketio.on(InboundMessages.Chat)
def on_chat(data):
    _dispatch(InboundMessages.Chat, data)


@socketio.on(InboundMessages.StartSession)
def on_start_session(data):
    _dispatch(InboundMessages.StartSession, data)


@socketio.on(InboundMessages.UpdateWager)
def on_update_wager(data):
    _dispatch(InboundMessages.UpdateWager, data)


@socketio.on(InboundMessages.ConfirmDecision)
def on_confirm_decision(data):
    _dispatch(InboundMessages.ConfirmDecision, data)


@socketio.on(InboundMessages.SendData)
def on_send_data(data):
    _dispatch(InboundMessages.SendData, data)


@socketio.on("message")
def on_message(data):
    """Typed JSON frames sent on the default channel."""
    ROUTER.handle_raw(flask.request.sid, data)


@socketio.on("disconnect")
def on_disconnect(*args):
    ROUTER.on_disconnect(flask.request.sid)


def on_exit():
    if SESSION_MANAGER is not None:
        SESSION_MANAGER.shutdown()
    if COORDINATOR is not None:
        COORDINATOR.shutdown()
    if CONFIG.snapshot_path and isinstance(STORE, InMemoryDocumentStore):
        STORE.save_snapshot(CONFIG.snapshot_path)


def run(config: ExperimentConfig):
    setup_logger("wagerlab", config.log_file)

    store = InMemoryDocumentStore()
    if config.snapshot_path and os.path.exists(config.snapshot_path):
        store.load_snapshot(config.snapshot_path)

    try:
        build_components(config, store=store)
    except ConfigurationError as e:
        logger.critical(f"Cannot start experiment {config.experiment_id}: {e}")
        sys.exit(1)

    atexit.register(on_exit)

    print("\n" + "=" * 70)
    print(f"Experiment {config.experiment_id}")
    print("=" * 70)
    print(f"\nServer starting on:")
    print(f"  Local:   http://localhost:{config.port}")
    print(f"  Export:  http://localhost:{config.port}/exportCsv?mode=solo")
    print("=" * 70 + "\n")

    socketio.run(
        app,
        host=config.host or "0.0.0.0",
        port=config.port,
        log_output=app.config["DEBUG"],
    )
