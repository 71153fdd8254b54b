#!/usr/bin/env python3
"""
Entry point for matlas: database-side operations on MongoDB Atlas clusters
through short-lived database users.
"""

import sys
import argparse
import logging

import requests
from pymongo import MongoClient
from pymongo.errors import PyMongoError

import mongodb_atlas
from broker_errors import BrokerError
from call_context import CallContext
from credential_broker import BrokerRequest, CredentialBroker
from mongodb_probe import MongoProbe
from temp_user import TempUserManager

logger = logging.getLogger("matlas")

DEFAULT_TIMEOUT = 300  # seconds, whole command


def configure_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler("matlas.log"),
            logging.StreamHandler()
        ]
    )


def _check_api_keys():
    if not mongodb_atlas.api_keys_configured():
        logger.error("MongoDB Atlas API keys not found in environment variables")
        return False, "API keys not found. Please set ATLAS_PUBLIC_KEY and ATLAS_PRIVATE_KEY in your .env file"
    return True, None


def _run_with_temp_user(args, database, operation):
    """
    Run ``operation(client)`` with a MongoClient authenticated as a temporary user.

    Returns:
        tuple: (success, result) where result is the operation's return value or an error message
    """
    ok, message = _check_api_keys()
    if not ok:
        return False, message

    request = BrokerRequest(
        cluster_name=args.cluster,
        project_id=args.project_id,
        roles=args.role or [],
        target_database=database,
        operation_deadline=args.timeout,
        use_probe=args.probe,
    )
    broker = CredentialBroker(mongodb_atlas.AtlasClient(), probe=MongoProbe(), verbose=args.verbose)

    def operation_with_client(result):
        with MongoClient(result.authenticated_uri) as client:
            return operation(client)

    try:
        return True, broker.with_ephemeral_credentials(CallContext(timeout=args.timeout), request, operation_with_client)
    except BrokerError as e:
        logger.error(str(e))
        return False, str(e)
    except requests.RequestException as e:
        error_message = f"Exception occurred while calling the Atlas API: {str(e)}"
        logger.error(error_message)
        return False, error_message
    except PyMongoError as e:
        error_message = f"MongoDB operation failed: {str(e)}"
        logger.error(error_message)
        return False, error_message


def list_databases(args):
    return _run_with_temp_user(args, None, lambda client: client.list_database_names())


def list_collections(args):
    return _run_with_temp_user(args, args.database,
                               lambda client: client[args.database].list_collection_names())


def cleanup_temp_users(args):
    ok, message = _check_api_keys()
    if not ok:
        return False, message

    manager = TempUserManager(mongodb_atlas.AtlasClient())
    try:
        return True, manager.cleanup_expired_users(CallContext(timeout=args.timeout), args.project_id)
    except BrokerError as e:
        logger.error(str(e))
        return False, str(e)


def _add_common_arguments(parser, needs_cluster=True):
    parser.add_argument("--project-id", default=mongodb_atlas.ATLAS_PROJECT_ID,
                        help="Atlas project ID (defaults to ATLAS_PROJECT_ID)")
    if needs_cluster:
        parser.add_argument("--cluster", required=True, help="Atlas cluster name")
        parser.add_argument("--role", action="append",
                            help="Role for the temporary user, 'role' or 'role@database' (repeatable)")
        parser.add_argument("--probe", action="store_true",
                            help="Ping the cluster until the temporary user is accepted instead of waiting blindly")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help=f"Overall timeout in seconds (default {DEFAULT_TIMEOUT})")
    parser.add_argument("--verbose", action="store_true", help="Log every step")


def main(argv=None):
    parser = argparse.ArgumentParser(description="MongoDB Atlas database operations with temporary users")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    databases_parser = subparsers.add_parser("list-databases", help="List databases in a cluster")
    _add_common_arguments(databases_parser)

    collections_parser = subparsers.add_parser("list-collections", help="List collections in a database")
    _add_common_arguments(collections_parser)
    collections_parser.add_argument("--database", required=True, help="Database name")

    cleanup_parser = subparsers.add_parser("cleanup-temp-users", help="Delete expired temporary users left behind")
    _add_common_arguments(cleanup_parser, needs_cluster=False)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args.verbose)

    if not args.project_id:
        print("A project ID is required: pass --project-id or set ATLAS_PROJECT_ID")
        sys.exit(1)

    if args.command == "list-databases":
        success, result = list_databases(args)
        if success:
            print("Databases:")
            for name in result:
                print(f"  {name}")
            sys.exit(0)
        else:
            print(f"Failed to list databases: {result}")
            sys.exit(1)

    elif args.command == "list-collections":
        success, result = list_collections(args)
        if success:
            print(f"Collections in {args.database}:")
            for name in result:
                print(f"  {name}")
            sys.exit(0)
        else:
            print(f"Failed to list collections: {result}")
            sys.exit(1)

    elif args.command == "cleanup-temp-users":
        success, result = cleanup_temp_users(args)
        if success:
            print(f"Deleted {len(result)} expired temporary users")
            for name in result:
                print(f"  {name}")
            sys.exit(0)
        else:
            print(f"Failed to clean up temporary users: {result}")
            sys.exit(1)


if __name__ == "__main__":
    main()
