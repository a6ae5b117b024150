"""
Run the CRA Request Navigator API with uvicorn.

Usage:
    python run.py
    python run.py --reload          # Development mode with auto-reload
    python run.py --no-scheduler    # API only; dispatch runs elsewhere (cron, scripts/dispatch_notifications.py)
"""
import argparse
import os
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run the CRA Request Navigator API server")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1, ignored if --reload is set)"
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not run the outbox and digest jobs in this process"
    )

    args = parser.parse_args()

    if args.no_scheduler:
        # Read by pydantic-settings when the app module is imported
        os.environ["SCHEDULER_ENABLED"] = "false"

    workers = 1 if args.reload else args.workers
    print("Starting CRA Request Navigator API server...")
    print(f"  Listening: http://{args.host}:{args.port}")
    print(f"  Reload: {args.reload}, workers: {workers}")
    print(f"  Notification scheduler: {'off' if args.no_scheduler else 'per settings'}")
    print()

    uvicorn.run(
        "request_navigator.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=workers
    )


if __name__ == "__main__":
    main()
