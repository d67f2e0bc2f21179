from __future__ import annotations

import argparse
import os

from wagerlab.configurations import experiment_config
from wagerlab.server import app

CONTENT_ROOT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "content")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--port", type=int, default=8080, help="Port number to listen on"
    )
    parser.add_argument(
        "--waiting-duration", type=float, default=30, help="Seconds a waiting cohort stays open"
    )
    parser.add_argument(
        "--snapshot", type=str, default=None, help="msgpack file to persist sessions across restarts"
    )
    args = parser.parse_args()

    config = (
        experiment_config.ExperimentConfig()
        .experiment(experiment_id="fight_prediction_demo")
        .hosting(port=args.port, host="0.0.0.0")
        .content(content_root=CONTENT_ROOT, ai_modes=["goodAI", "badAI"])
        .timing(waiting_duration_s=args.waiting_duration, phase_duration_s=15, chat_duration_s=30)
        .storage(snapshot_path=args.snapshot)
        .logging(log_file="./fight_prediction.log")
    )

    app.run(config)
