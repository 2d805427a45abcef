from __future__ import annotations

import argparse
import asyncio
import sys

from .config import ClientConfig
from .logging_config import setup_logging


def build_credentials(args: argparse.Namespace, config: ClientConfig):
	if args.token:
		return {"type": "token", "token": args.token}
	if args.auth_server:
		return {
			"type": "authServer",
			"authServer": args.auth_server,
			"location": args.location or config.server_url,
			"password": config.password,
		}
	return config.password


def main(argv: list[str] | None = None) -> int:
	config = ClientConfig.from_env()

	parser = argparse.ArgumentParser(description="pyrite SFU console client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use PYRITE_LOG_LEVEL.",
	)
	parser.add_argument("--server-url", default=config.server_url, help="WebSocket signaling URL")
	parser.add_argument("--group", default=config.group, help="Group to join")
	parser.add_argument("--username", default=config.username, help="Username")
	parser.add_argument("--password", default=config.password, help="Group password")
	parser.add_argument("--token", default=None, help="Join with a token instead of a password")
	parser.add_argument("--auth-server", default=None, help="Exchange the password for a token at this URL")
	parser.add_argument("--location", default=None, help="Group location sent to the auth server")
	parser.add_argument("--publish", default=None, help="Publish this ffmpeg source (file, URL or device)")
	parser.add_argument("--publish-format", default=None, help="ffmpeg input format for --publish (e.g. v4l2, pulse)")
	parser.add_argument("--label", default="camera", help="Label of the published stream")
	parser.add_argument("--download-dir", default=".", help="Where received files are written")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	if not args.group:
		parser.error("--group is required (or set PYRITE_GROUP)")

	config.server_url = args.server_url
	config.group = args.group
	config.username = args.username
	config.password = args.password

	from .console import Console

	console = Console(config, download_dir=args.download_dir)
	try:
		return asyncio.run(
			console.run(
				build_credentials(args, config),
				publish=args.publish,
				publish_format=args.publish_format,
				label=args.label,
			)
		)
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
