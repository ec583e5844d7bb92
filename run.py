import os
import sys
from datetime import datetime

import uvicorn
from dotenv import load_dotenv

# Load .env file
load_dotenv()

LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs"))


class TeeOutput:
    """Write to both console and file"""

    def __init__(self, file_path, stream):
        self.file = open(file_path, "a", encoding="utf-8", buffering=1)
        self.stream = stream

    def write(self, data):
        self.stream.write(data)
        self.stream.flush()
        self.file.write(data)
        self.file.flush()

    def flush(self):
        self.stream.flush()
        self.file.flush()


def build_log_config(log_path: str) -> dict:
    """uvicorn logging: console plus the run's log file, app loggers included"""
    file_handler = {
        "class": "logging.FileHandler",
        "formatter": "file_format",
        "filename": log_path,
        "encoding": "utf-8",
    }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(asctime)s - %(levelprefix)s %(name)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": False,
            },
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": '%(asctime)s - %(levelprefix)s %(client_addr)s - "%(request_line)s" %(status_code)s',
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": False,
            },
            "file_format": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": "ext://sys.stdout",
            },
            "file": file_handler,
        },
        "loggers": {
            "uvicorn": {"handlers": ["console", "file"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["console", "file"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["access", "file"], "level": "INFO", "propagate": False},
            # request handlers and scheduler jobs
            "app": {"handlers": ["console", "file"], "level": "INFO", "propagate": False},
            "apscheduler": {"handlers": ["console", "file"], "level": "WARNING", "propagate": False},
        },
    }


def main():
    os.makedirs(LOG_DIR, exist_ok=True)
    log_path = os.path.join(LOG_DIR, f"club_ops_{datetime.now():%Y-%m-%d_%H-%M-%S}.log")

    # stray prints and tracebacks land in the same file
    sys.stdout = TeeOutput(log_path, sys.__stdout__)
    sys.stderr = TeeOutput(log_path, sys.__stderr__)

    print("=" * 60)
    print("Club Ops API Starting...")
    print(f"Log file: {log_path}")
    print("=" * 60)

    # one worker: the websocket broadcaster and the scheduler live in-process
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 8181)),
        workers=1,
        log_config=build_log_config(log_path),
        access_log=True,
    )


if __name__ == "__main__":
    main()
