"""Worker process started by the supervisor for the "closure" target.

It only serves the reserved closure function and exits with one of the
EXIT_* codes from constants.
"""
import logging
import sys

import constants
import custom_exceptions
from tamer import Tamer

logger = logging.getLogger(__name__)


def main(environ=None) -> int:
    try:
        tamer = Tamer.init_worker(environ, allow_closures=True)

    except custom_exceptions.UnsupervisedWorker as exp:
        logger.error(f"{exp}")
        return constants.EXIT_UNSUPERVISED_WORKER

    except custom_exceptions.InvalidProtocol as exp:
        logger.error(f"{exp}")
        return constants.EXIT_PROTOCOL_UNAVAILABLE

    except custom_exceptions.ConnectionFailure as exp:
        logger.error(f"{exp}")
        return constants.EXIT_SERVER_CONNECTION_FAILED

    try:
        tamer.work()

    except KeyboardInterrupt:
        return constants.EXIT_GRACEFUL_SHUTDOWN

    except custom_exceptions.ConnectionFailure as exp:
        logger.error(f"Lost the connection to the server: {exp}")
        return constants.EXIT_SERVER_CONNECTION_FAILED

    except Exception:
        logger.exception("closure worker failed")
        return constants.EXIT_EXCEPTION

    finally:
        tamer.disconnect()

    return constants.EXIT_GRACEFUL_SHUTDOWN


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    sys.exit(main())
