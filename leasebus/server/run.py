import asyncio
import logging
import argparse
import uvicorn
from leasebus.server.api import create_app
from leasebus.server.registry import BrokerRegistry
from leasebus.server.tcp import TcpFrontend


async def main():
    parser = argparse.ArgumentParser(description="leasebus reference broker")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=9000, help="TCP port to bind to")
    parser.add_argument(
        "--http-port",
        type=int,
        default=None,
        help="Also serve the HTTP API on this port",
    )
    parser.add_argument(
        "--visibility-timeout",
        type=float,
        default=30.0,
        help="Seconds a received message stays invisible",
    )
    parser.add_argument(
        "--reaper-interval",
        type=float,
        default=1.0,
        help="Visibility reaper interval in seconds",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    registry = BrokerRegistry(visibility_timeout=args.visibility_timeout)
    registry.start_reaper(interval=args.reaper_interval)

    server = TcpFrontend(registry, host=args.host, port=args.port)
    services = [server.serve_forever()]
    if args.http_port is not None:
        config = uvicorn.Config(
            create_app(registry),
            host=args.host,
            port=args.http_port,
            log_level=args.log_level.lower(),
        )
        services.append(uvicorn.Server(config).serve())

    print(f"Starting leasebus broker on {args.host}:{args.port}...")
    try:
        await asyncio.gather(*services)
    except asyncio.CancelledError:
        await server.stop()
        await registry.stop_reaper()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
