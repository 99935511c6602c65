import argparse
import logging
import time

from flask import Flask, jsonify

logger = logging.getLogger(__name__)


def build_message(time_in_queue):
    """JSON body returned for every request."""
    return {
        "message": f"Waited {time_in_queue} ms in queue",
        "another_property": {
            "width": 1,
            "height": 2,
            "girth": 3,
            "depth": 4,
            "length": 5,
            "circumference": 6,
        },
    }


def create_app(max_delay_ms=None):
    """Create the target app.

    GET /json/<time_in_queue> holds the request for `time_in_queue`
    milliseconds, capped at `max_delay_ms` when given, then answers with
    the JSON message.
    """
    app = Flask(__name__)

    @app.route('/json/<int:time_in_queue>')
    def json_message(time_in_queue):
        delay_ms = time_in_queue if max_delay_ms is None else min(time_in_queue, max_delay_ms)
        if delay_ms > 0:
            time.sleep(delay_ms / 1000)
        return jsonify(build_message(time_in_queue))

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="Target HTTP server for the load generator.")
    parser.add_argument('--host', type=str, default='0.0.0.0', help="Address to bind")
    parser.add_argument('--port', type=int, default=42069, help="Port to listen on")
    parser.add_argument('--max_delay_ms', type=int, default=None,
                        help="Upper bound on the simulated queue delay in milliseconds")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(message)s')
    logger.info(f"Serving /json/<time> on {args.host}:{args.port}")
    app = create_app(args.max_delay_ms)
    app.run(host=args.host, port=args.port, debug=False, threaded=True)


if __name__ == '__main__':
    main()
