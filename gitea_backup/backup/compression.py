"""
Compression handlers for backup archives.

Supports multiple formats:
- zip: Deflate at level 9
- tar.gz: Gzip compressed tar, level 9
- tar.bz2: Bzip2 compressed tar, level 9
- tar.xz: LZMA compressed tar, preset 9

Archives are rooted at the staging directory, so extracting one
reproduces the dump file and the repositories tree side by side.
"""

import logging
import lzma
import os
import stat
import tarfile
import zipfile
import zlib
from datetime import datetime
from typing import Optional

from gitea_backup.errors import CorruptArtifactError, PackagingError


logger = logging.getLogger(__name__)

# Format -> file extension
ARCHIVE_EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
}

VERIFY_CHUNK_SIZE = 1024 * 1024


def create_archive(source_dir: str, output_path: str, compression_format: str = 'zip') -> str:
    """
    Create a compressed archive of a directory's contents.

    Args:
        source_dir: Directory whose contents become the archive root
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz')

    Returns:
        Full path to the created archive file

    Raises:
        PackagingError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in ARCHIVE_EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(ARCHIVE_EXTENSIONS.keys())}"
        )

    if not os.path.isdir(source_dir) or not os.listdir(source_dir):
        raise PackagingError(f"Nothing to archive in {source_dir}")

    archive_path = f"{output_path}.{ARCHIVE_EXTENSIONS[compression_format]}"
    handler = _create_zip if compression_format == 'zip' else _create_tar

    try:
        handler(source_dir, archive_path, compression_format)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Could not remove partial archive {archive_path}")
        raise PackagingError(f"Failed to create archive: {e}")


def _create_zip(source_dir: str, archive_path: str, compression_format: str):
    """
    Create a ZIP archive with maximum deflate compression.

    Like zip -r, symlinks are followed and their targets archived under the
    link's name. Directory entries are written too, so empty directories
    survive. A link that points back at one of its ancestor directories,
    or at nothing, is stored as a symlink entry instead. Timestamps before
    1980 are clamped to 1980-01-01.
    """
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED,
                         compresslevel=9, strict_timestamps=False) as zipf:
        for dirpath, dirnames, filenames in os.walk(source_dir, followlinks=True):
            relative_dir = os.path.relpath(dirpath, source_dir)

            if relative_dir != '.':
                zipf.write(dirpath, relative_dir)

            real_dirpath = os.path.realpath(dirpath)
            followed = []
            for dirname in sorted(dirnames):
                link_path = os.path.join(dirpath, dirname)
                if os.path.islink(link_path) and _is_ancestor(os.path.realpath(link_path), real_dirpath):
                    _write_symlink(zipf, link_path, os.path.relpath(link_path, source_dir))
                else:
                    followed.append(dirname)
            dirnames[:] = followed

            for filename in sorted(filenames):
                file_path = os.path.join(dirpath, filename)
                arcname = os.path.relpath(file_path, source_dir)
                if os.path.isfile(file_path):
                    zipf.write(file_path, arcname)
                elif os.path.islink(file_path):
                    logger.warning(f"Archiving dangling symlink as a link: {arcname}")
                    _write_symlink(zipf, file_path, arcname)
                else:
                    logger.warning(f"Skipping special file: {arcname}")


def _is_ancestor(target: str, path: str) -> bool:
    return path == target or path.startswith(target.rstrip(os.sep) + os.sep)


def _write_symlink(zipf: zipfile.ZipFile, link_path: str, arcname: str):
    """Store a symlink as a Unix symlink entry holding the link target."""
    info = zipfile.ZipInfo(arcname)
    info.create_system = 3
    info.external_attr = (stat.S_IFLNK | 0o777) << 16
    zipf.writestr(info, os.readlink(link_path))


def _create_tar(source_dir: str, archive_path: str, compression_format: str):
    """
    Create a compressed TAR archive.

    Symlinks are stored as symlinks, as rsync -a mirrors them.

    Args:
        source_dir: Directory whose contents become the archive root
        archive_path: Output archive path
        compression_format: 'tar.gz', 'tar.bz2' or 'tar.xz'
    """
    mode_map = {
        'tar.gz': ('w:gz', {'compresslevel': 9}),
        'tar.bz2': ('w:bz2', {'compresslevel': 9}),
        'tar.xz': ('w:xz', {'preset': 9}),
    }

    mode, options = mode_map[compression_format]

    with tarfile.open(archive_path, mode, **options) as tar:
        for name in sorted(os.listdir(source_dir)):
            tar.add(os.path.join(source_dir, name), arcname=name, recursive=True)


def verify_archive(archive_path: str, compression_format: Optional[str] = None) -> int:
    """
    Run the format's full integrity test on an archive.

    For zip every member's CRC is checked; for tar every member is read
    through the decompressor to the end.

    Args:
        archive_path: Path to the archive
        compression_format: Archive format (default: derived from the file name)

    Returns:
        Number of members checked

    Raises:
        CorruptArtifactError: If the archive is missing, empty, truncated or fails a check
    """
    if compression_format is None:
        compression_format = detect_archive_format(archive_path)

    if not os.path.isfile(archive_path):
        raise CorruptArtifactError(f"Archive not found: {archive_path}")

    try:
        if compression_format == 'zip':
            member_count = _verify_zip(archive_path)
        else:
            member_count = _verify_tar(archive_path)
    except CorruptArtifactError:
        raise
    except (zipfile.BadZipFile, tarfile.TarError, zlib.error, lzma.LZMAError, EOFError, OSError) as e:
        raise CorruptArtifactError(f"Backup archive is corrupted: {e}")

    if member_count == 0:
        raise CorruptArtifactError("Backup archive is empty")

    return member_count


def _verify_zip(archive_path: str) -> int:
    with zipfile.ZipFile(archive_path, 'r') as zipf:
        bad_member = zipf.testzip()
        if bad_member is not None:
            raise CorruptArtifactError(f"Backup archive is corrupted: bad CRC or data in {bad_member}")
        return len(zipf.infolist())


def _verify_tar(archive_path: str) -> int:
    member_count = 0
    with tarfile.open(archive_path, 'r:*') as tar:
        for member in tar:
            member_count += 1
            if member.isfile():
                extracted = tar.extractfile(member)
                while extracted.read(VERIFY_CHUNK_SIZE):
                    pass
    return member_count


def detect_archive_format(filename: str) -> str:
    """
    Derive the archive format from a file name.

    Raises:
        ValueError: If the extension is not a supported archive format
    """
    for compression_format, extension in ARCHIVE_EXTENSIONS.items():
        if filename.endswith(f".{extension}"):
            return compression_format
    raise ValueError(f"Unknown archive format: {filename}")


def generate_archive_filename(product: str, run_id: Optional[str] = None, compression_format: str = 'zip') -> str:
    """
    Generate a standardized archive filename.

    Format: {product}_backup_{YYYYMMDD_HHMMSS}.{ext}

    Args:
        product: Product name
        run_id: Run timestamp identifier (default: now)
        compression_format: Compression format

    Returns:
        Filename (without path)
    """
    if run_id is None:
        run_id = datetime.now().strftime('%Y%m%d_%H%M%S')

    extension = ARCHIVE_EXTENSIONS.get(compression_format, 'zip')

    # Sanitize product name (replace spaces and special chars with underscores)
    safe_product = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in product
    )

    return f"{safe_product}_backup_{run_id}.{extension}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for extension in ARCHIVE_EXTENSIONS.values():
        if filename.endswith(f".{extension}"):
            return filename[:-(len(extension) + 1)]
    # Fallback to standard splitext
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        PackagingError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise PackagingError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise PackagingError(f"Failed to get archive size: {e}")
