from flask import Flask, request, jsonify
import asyncio
import logging
from contextvars import ContextVar
from threading import Thread

from ble_commands import parse_intent
from ble_driver import BleakRadioDriver
from rover_config import BLE_CONNECT_TIMEOUT, HTTP_HOST, HTTP_PORT, LOG_LEVEL, RUN_ASYNC_TIMEOUT
from rover_controller import RoverController

logger = logging.getLogger(__name__)

# Prompts raised while serving the current request
_request_prompts = ContextVar("request_prompts", default=None)


class LoopThread:
    """Runs an asyncio event loop in a daemon thread for the Flask handlers."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = Thread(target=self._run, daemon=True, name="rover-loop")

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self):
        self.thread.start()

    def run(self, coro, timeout=RUN_ASYNC_TIMEOUT):
        """Run a coroutine on the loop thread and wait for its result."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=timeout)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5.0)
        self.loop.close()


class RoverService:
    """What the HTTP layer holds: the controller and its loop."""

    def __init__(self, controller_factory):
        self.runner = LoopThread()
        self.runner.start()
        self.controller = controller_factory(self.web_prompt)
        self.runner.run(self.controller.start())

    async def web_prompt(self, prompt):
        # The HTTP client answers by calling the suggested endpoint itself
        collected = _request_prompts.get()
        if collected is None:
            logger.warning("[HTTP] prompt outside a request: %s", prompt.warning)
        else:
            collected.append(prompt.to_dict())
        return False

    async def _collect_prompts(self, coro):
        collected = []
        token = _request_prompts.set(collected)
        try:
            result = await coro
        finally:
            _request_prompts.reset(token)
        return result, (collected[0] if collected else None)

    def run(self, coro):
        return self.runner.run(coro)

    def run_with_prompt(self, coro):
        """Run ``coro`` and return (result, first prompt it raised or None)."""
        return self.runner.run(self._collect_prompts(coro))

    def shutdown(self):
        try:
            self.runner.run(self.controller.close())
        finally:
            self.runner.stop()


def default_controller(prompt_handler):
    return RoverController(BleakRadioDriver(connect_timeout=BLE_CONNECT_TIMEOUT),
                           prompt_handler=prompt_handler)


def create_app(controller_factory=default_controller):
    app = Flask(__name__)
    service = RoverService(controller_factory)
    app.extensions["rover"] = service
    controller = service.controller

    @app.route('/')
    def home():
        return jsonify({
            "status": "Rover BLE API is running",
            "endpoints": {
                "session": ["/state", "/scan", "/peripherals", "/connect/<id>", "/disconnect"],
                "commands": ["/send", "/speed", "/read"],
                "radar": ["/radar", "/radar/scan", "/radar/leave"]
            }
        })

    @app.route('/state', methods=['GET'])
    def state():
        return jsonify(controller.state())

    @app.route('/peripherals', methods=['GET'])
    def peripherals():
        return jsonify({
            "version": controller.registry.version,
            "peripherals": [p.to_dict() for p in controller.registry.values()],
            "count": len(controller.registry)
        })

    @app.route('/scan', methods=['POST'])
    def scan():
        """Start a scan; discovered peripherals show up under /peripherals"""
        try:
            started = service.run(controller.start_scan())
            return jsonify({
                "status": "scanning" if started else "already_scanning",
                "session": controller.session.session.to_dict()
            })
        except Exception as e:
            logger.exception("[HTTP] /scan failed")
            return jsonify({"error": str(e)}), 500

    @app.route('/connect/<identity>', methods=['POST'])
    def connect(identity):
        try:
            if identity not in controller.registry:
                return jsonify({"error": "Device not found"}), 404

            result, prompt = service.run_with_prompt(controller.connect(identity))
            return jsonify({
                "status": "connected" if result.ok else ("rejected" if result.rejected else "failed"),
                "target_id": identity,
                "failed_step": result.failed_step.name if result.failed_step else None,
                "prompt": prompt
            })
        except Exception as e:
            logger.exception("[HTTP] /connect failed")
            return jsonify({"error": str(e)}), 500

    @app.route('/disconnect', methods=['POST'])
    def disconnect():
        try:
            dropped = service.run(controller.disconnect())
            return jsonify({"status": "disconnected" if dropped else "not_connected"})
        except Exception as e:
            logger.exception("[HTTP] /disconnect failed")
            return jsonify({"error": str(e)}), 500

    @app.route('/send', methods=['POST'])
    def send():
        """Send a movement or radar command: {"intent": "left"}"""
        data = request.get_json(silent=True) or {}
        name = data.get('intent')
        if not name:
            return jsonify({"error": "intent required"}), 400
        try:
            intent = parse_intent(name)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        try:
            sent, prompt = service.run_with_prompt(controller.send(intent))
            return jsonify({
                "intent": intent.name,
                "radar_sent": sent,
                "radar_mode": controller.radar_mode,
                "speed": controller.dispatcher.speed,
                "prompt": prompt
            })
        except Exception as e:
            logger.exception("[HTTP] /send failed")
            return jsonify({"error": str(e)}), 500

    @app.route('/speed', methods=['POST'])
    def speed():
        data = request.get_json(silent=True) or {}
        try:
            value = controller.dispatcher.set_speed(data.get('speed'))
        except (TypeError, ValueError) as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"speed": value})

    @app.route('/read', methods=['POST'])
    def read():
        try:
            data, prompt = service.run_with_prompt(controller.dispatcher.request_read())
            return jsonify({
                "value": list(data) if data is not None else None,
                "prompt": prompt
            })
        except Exception as e:
            logger.exception("[HTTP] /read failed")
            return jsonify({"error": str(e)}), 500

    @app.route('/radar', methods=['GET'])
    def radar():
        body = controller.radar.to_dict()
        body["radar_mode"] = controller.radar_mode
        return jsonify(body)

    @app.route('/radar/scan', methods=['POST'])
    def radar_scan():
        try:
            sent, prompt = service.run_with_prompt(controller.scan_radar())
            return jsonify({
                "radar_sent": sent,
                "radar_mode": controller.radar_mode,
                "prompt": prompt
            })
        except Exception as e:
            logger.exception("[HTTP] /radar/scan failed")
            return jsonify({"error": str(e)}), 500

    @app.route('/radar/leave', methods=['POST'])
    def radar_leave():
        controller.leave_radar()
        return jsonify({"radar_mode": controller.radar_mode})

    return app


if __name__ == '__main__':
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    try:
        # Reloader would start a second controller on the same adapter
        app.run(host=HTTP_HOST, port=HTTP_PORT, debug=False)
    finally:
        app.extensions["rover"].shutdown()
