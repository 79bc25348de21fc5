"""
Builds restic argv lists and environments for each subcommand
Backup, retention, maintenance and copy flags live here
"""
import os
from typing import Dict, List, Optional

from models.repository import RepositoryTarget
from models.settings import RetentionPolicy


class ResticArgumentBuilder:
    """Builds argument vectors and environments for restic subcommands"""

    @staticmethod
    def build_environment(target: RepositoryTarget, aws_override: Optional[RepositoryTarget] = None) -> Dict[str, str]:
        """Variables layered over the process environment for one repository

        aws_override supplies the object-storage credentials when the engine
        has to read from another repository (copy, init with chunker params)
        """
        env = {
            'RESTIC_REPOSITORY': target.location,
            'RESTIC_PASSWORD': target.password,
        }
        if target.cache_dir:
            env['RESTIC_CACHE_DIR'] = target.cache_dir

        aws_source = aws_override or target
        if aws_source.aws_access_key_id:
            env['AWS_ACCESS_KEY_ID'] = aws_source.aws_access_key_id
        if aws_source.aws_secret_access_key:
            env['AWS_SECRET_ACCESS_KEY'] = aws_source.aws_secret_access_key
        return env

    @staticmethod
    def build_backup_args(
        directories: List[str],
        tags: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        exclude_file: str = "",
        hostname: str = "",
        extra_args: Optional[List[str]] = None,
        dry_run: bool = False,
    ) -> List[str]:
        """Build arguments for backup command"""
        args = ['backup']
        args.extend(directories)

        for tag in tags or []:
            args.extend(['--tag', tag])

        for pattern in exclude_patterns or []:
            args.extend(['--exclude', pattern])

        # Missing exclude file is silently ignored
        if exclude_file and os.path.exists(exclude_file):
            args.extend(['--exclude-file', exclude_file])

        if hostname:
            args.extend(['--host', hostname])

        args.extend(extra_args or [])

        if dry_run:
            args.append('--dry-run')
        return args

    @staticmethod
    def build_retention_args(retention: RetentionPolicy) -> List[str]:
        """Build --keep-* flags, skipping unset fields"""
        args = []
        if retention.keep_within:
            args.extend(['--keep-within', retention.keep_within])
        if retention.keep_hourly > 0:
            args.extend(['--keep-hourly', str(retention.keep_hourly)])
        if retention.keep_daily > 0:
            args.extend(['--keep-daily', str(retention.keep_daily)])
        if retention.keep_weekly > 0:
            args.extend(['--keep-weekly', str(retention.keep_weekly)])
        if retention.keep_monthly > 0:
            args.extend(['--keep-monthly', str(retention.keep_monthly)])
        if retention.keep_yearly > 0:
            args.extend(['--keep-yearly', str(retention.keep_yearly)])
        return args

    @staticmethod
    def build_forget_args(
        retention: RetentionPolicy,
        hostname: str = "",
        group_by: str = "",
        prune: bool = False,
        dry_run: bool = False,
    ) -> List[str]:
        """Build arguments for forget command; empty hostname means all hosts"""
        args = ['forget']
        args.extend(ResticArgumentBuilder.build_retention_args(retention))
        if hostname:
            args.extend(['--host', hostname])
        if group_by:
            args.extend(['--group-by', group_by])
        if prune:
            args.append('--prune')
        if dry_run:
            args.append('--dry-run')
        return args

    @staticmethod
    def build_prune_args(dry_run: bool = False) -> List[str]:
        args = ['prune']
        if dry_run:
            args.append('--dry-run')
        return args

    @staticmethod
    def build_check_args(read_data: bool = False, read_data_subset: str = "") -> List[str]:
        """Build arguments for check command"""
        args = ['check']
        if read_data:
            args.append('--read-data')
        elif read_data_subset:
            args.extend(['--read-data-subset', read_data_subset])
        return args

    @staticmethod
    def build_copy_args(
        from_repository: str,
        hostname: str = "",
        snapshot_ids: Optional[List[str]] = None,
        from_password_file: str = "",
    ) -> List[str]:
        """Build arguments for copy command, run against the destination repository"""
        args = ['copy', '--from-repo', from_repository]
        if hostname:
            args.extend(['--host', hostname])
        args.extend(snapshot_ids or [])
        if from_password_file:
            args.extend(['--from-password-file', from_password_file])
        return args

    @staticmethod
    def build_init_args(from_repository: str = "", from_password_file: str = "") -> List[str]:
        """Build arguments for init, optionally copying chunker parameters"""
        args = ['init']
        if from_repository:
            args.extend(['--from-repo', from_repository, '--copy-chunker-params'])
            if from_password_file:
                args.extend(['--from-password-file', from_password_file])
        return args
