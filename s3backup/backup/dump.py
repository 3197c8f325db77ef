"""
Database dumps for backup.

Runs mysqldump (or mariadb-dump) for each configured database and streams
its output through gzip into the local backup directory:

    {local_dir}/{dbname}_{YYYY-MM-DD_HH-MM-SS}.sql.gz

A failed dump never leaves a partial file behind for the upload to pick up.
"""

import gzip
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from datetime import datetime
from typing import Iterable, List, Optional

from .orchestrator import CancellationToken, OperationCancelled


logger = logging.getLogger(__name__)

DUMP_COMMANDS = ('mysqldump', 'mariadb-dump')
DUMP_FLAGS = ['--quick', '--single-transaction', '--routines', '--triggers', '--events']
CHUNK_SIZE = 1024 * 1024


class DumpError(Exception):
    """Raised when a database dump fails."""
    pass


def find_dump_command() -> str:
    """
    Locate mysqldump or mariadb-dump on PATH.

    Raises:
        DumpError: If neither command is installed
    """
    for command in DUMP_COMMANDS:
        path = shutil.which(command)
        if path:
            return path
    raise DumpError("mysqldump or mariadb-dump command not found")


def generate_dump_filename(dbname: str, now: Optional[datetime] = None) -> str:
    """
    Generate dump filename with timestamp.

    Format: {dbname}_{YYYY-MM-DD_HH-MM-SS}.sql.gz
    """
    now = now or datetime.now()
    return f"{dbname}_{now.strftime('%Y-%m-%d_%H-%M-%S')}.sql.gz"


def dump_database(
    database,
    output_dir: str,
    token: Optional[CancellationToken] = None,
    command: Optional[str] = None
) -> str:
    """
    Dump one database to a gzip-compressed file.

    Args:
        database: DatabaseConfig
        output_dir: Directory the dump is written into
        token: Cancellation token; a cancelled dump is killed
        command: Dump command, located on PATH when omitted

    Returns:
        Path of the created .sql.gz file

    Raises:
        DumpError: If the dump fails or is cancelled
    """
    token = token if token is not None else CancellationToken()
    command = command or find_dump_command()
    output_path = os.path.join(output_dir, generate_dump_filename(database.dbname))

    logger.info(f"Backing up database: {database.host}:{database.port}/{database.dbname}")

    args = [
        command,
        *DUMP_FLAGS,
        f'-h{database.host}',
        f'-P{database.port}',
        f'-u{database.user}',
        database.dbname,
    ]
    # Keep the password out of the process list
    env = dict(os.environ, MYSQL_PWD=database.password)

    try:
        token.raise_if_cancelled()
        # stderr goes to a file so a chatty dump cannot block on a full pipe
        with tempfile.TemporaryFile() as err_file, gzip.open(output_path, 'wb') as out:
            process = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=err_file, env=env)
            finished = threading.Event()
            watcher = threading.Thread(
                target=_kill_on_cancel,
                args=(process, token, finished),
                name=f'Dump-{database.dbname}',
                daemon=True,
            )
            watcher.start()
            try:
                for chunk in iter(lambda: process.stdout.read(CHUNK_SIZE), b''):
                    token.raise_if_cancelled()
                    out.write(chunk)
                returncode = process.wait()
            finally:
                finished.set()
                if process.poll() is None:
                    process.kill()
                    process.wait()
                process.stdout.close()
                watcher.join()

            # A killed dump may still exit 0 with a truncated stream
            token.raise_if_cancelled()

            err_file.seek(0)
            stderr = err_file.read()

        if returncode != 0:
            message = stderr.decode('utf-8', errors='replace').strip()
            raise DumpError(f"Backup of {database.dbname} failed (exit {returncode}): {message}")

    except DumpError:
        _remove_partial(output_path)
        raise
    except OperationCancelled as e:
        _remove_partial(output_path)
        raise DumpError(f"Backup of {database.dbname} cancelled: {e}")
    except OSError as e:
        _remove_partial(output_path)
        raise DumpError(f"Backup of {database.dbname} failed: {e}")
    except BaseException:
        _remove_partial(output_path)
        raise

    logger.info(f"Database dumped: {output_path}")
    return output_path


def _kill_on_cancel(process, token: CancellationToken, finished: threading.Event, interval: float = 0.1):
    """Kill the dump process once the token is cancelled, even while it produces no output."""
    while not finished.wait(interval):
        if token.is_cancelled():
            logger.warning(f"Killing dump process {process.pid}: {token.reason}")
            process.kill()
            return


def dump_all(databases: Iterable, output_dir: str, token: Optional[CancellationToken] = None) -> List[str]:
    """
    Dump every configured database, stopping at the first failure.

    Returns:
        Paths of the created dumps

    Raises:
        DumpError: If any dump fails
    """
    databases = list(databases)
    if not databases:
        return []

    command = find_dump_command()
    paths = [dump_database(database, output_dir, token, command=command) for database in databases]

    logger.info("Backup database complete!")
    return paths


def _remove_partial(path: str):
    """Clean up partial dump on failure."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial dump {path}: {e}")
