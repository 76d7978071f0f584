from pathlib import Path
from typing import Callable, Optional

from flask import Flask, request, Response, jsonify
from dotenv import load_dotenv

from main import GAIC, AuthError, GenerationFailure, PromptLogger, Settings, explain_with_pizza

# Load environment variables
load_dotenv()


ROOT = Path(__file__).parent


def create_app(settings: Optional[Settings] = None,
               client_factory: Callable[[Settings], GAIC] = GAIC) -> Flask:
    """
    Build the web app. Settings are read once here, so a missing credential
    stops the server at startup instead of failing every request.
    """
    settings = settings or Settings.from_env()

    app = Flask(__name__, static_folder=None)

    @app.route("/")
    def index() -> Response:
        html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
        return Response(html, mimetype="text/html")

    @app.route("/api/explain", methods=["POST"])
    async def api_explain():
        data = request.get_json(silent=True) or {}
        topic = data.get("topic")
        if not isinstance(topic, str) or not topic.strip():
            return jsonify({"error": "Topic required"}), 400

        # GAIC holds loop-bound async clients; one per request, closed before the loop ends
        async with client_factory(settings) as g:
            try:
                result = await explain_with_pizza(g, topic.strip(), PromptLogger.from_settings(settings))
            except AuthError as e:
                return jsonify({"error": str(e)}), 500
            except GenerationFailure as e:
                return jsonify({"error": str(e)}), 502
        return jsonify(result.model_dump())

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="127.0.0.1", port=5001, debug=True, threaded=True)
