from dataclasses import dataclass
from typing import Optional

import docker

from .config import get_db_url, load_config, resolve_path
from .db import init_db, make_engine, make_session_factory
from .languages import LanguageRegistry, image_table, load_catalog
from .orchestrator import Orchestrator
from .sandbox import SandboxRunner
from .webhook import WebhookNotifier


@dataclass
class Services:
    config: dict
    session_factory: object
    registry: LanguageRegistry
    runner: SandboxRunner
    notifier: WebhookNotifier
    orchestrator: Orchestrator


def build_services(config: Optional[dict] = None, docker_client=None,
                   database_url: Optional[str] = None) -> Services:
    """
    DBとDockerクライアントを1つずつ作り、各コンポーネントに渡す（プロセス内で共有）
    """
    config = load_config() if config is None else config
    engine = make_engine(database_url or get_db_url(config))
    session_factory = make_session_factory(engine)

    catalog = load_catalog(resolve_path(config.get('languages_file', 'languages.yaml')))
    init_db(engine, session_factory, catalog)

    client = docker_client or docker.from_env()
    registry = LanguageRegistry(session_factory, image_table(catalog))
    runner = SandboxRunner(client, registry, config)
    notifier = WebhookNotifier(timeout=config.get('webhook', {}).get('timeout', 10))

    workflow = config.get('workflow', {})
    orchestrator = Orchestrator(
        session_factory,
        runner,
        notifier,
        default_limits=config.get('limits', {}),
        max_attempts=workflow.get('max_attempts', 3),
        backoff=workflow.get('backoff', 2),
        claim_timeout=workflow.get('claim_timeout', 300),
    )
    return Services(
        config=config,
        session_factory=session_factory,
        registry=registry,
        runner=runner,
        notifier=notifier,
        orchestrator=orchestrator,
    )
