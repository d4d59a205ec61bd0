"""One end-to-end run: rules, classpath, ingestion, engine, patch or apply."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

import requests

from . import config as defaults
from .builtin_rules import builtin_registry
from .classpath import ClasspathAssembler
from .config_manager import RunConfig
from .declarative import DeclarativeRuleSet, load_declarative_rules
from .descriptor import BuildDescriptorLoader, EffectiveModel
from .diff_engine import ApplyResult, ChangeApplier, PatchEmitter
from .engine import ExecutionContext, RuleEngine
from .errors import ApplyFailures, ParseFailure, RuleFieldConfigurationFailure
from .extensions import ExtensionLoader, LoadedExtensions
from .ingest import SourceIngestion, has_compiled_sources
from .markers import ProvenanceBundle
from .models import EditResult, ResolvedClasspath
from .parser import TypeContext
from .registry import RegistryChain
from .resolver import ArtifactResolver, RemoteRepository
from .results import ResultsClassification, classify, format_duration
from .rules import CompositeRule, Rule, configure_rule

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    rule_ids: List[str] = field(default_factory=list)
    classification: ResultsClassification = field(default_factory=ResultsClassification)
    warnings: List[str] = field(default_factory=list)
    parse_failures: List[ParseFailure] = field(default_factory=list)
    source_count: int = 0
    classpath: Optional[ResolvedClasspath] = None
    patch_path: Optional[Path] = None
    apply_result: Optional[ApplyResult] = None
    extensions: Optional[LoadedExtensions] = None

    @property
    def time_saved(self) -> timedelta:
        return self.classification.time_saved

    @property
    def time_saved_text(self) -> str:
        return format_duration(self.time_saved)

    @property
    def has_changes(self) -> bool:
        return not self.classification.is_empty


def build_resolver(cfg: RunConfig, session: Optional[requests.Session] = None) -> ArtifactResolver:
    resolver = ArtifactResolver(
        local_repository=cfg.local_repository,
        remotes=RemoteRepository.from_config(cfg.remote_repositories),
        timeout=cfg.http_timeout,
        workers=cfg.resolver_workers,
        session=session,
    )
    # Dependency POMs see the same system properties as the project POM.
    resolver.loader = BuildDescriptorLoader(resolver, system_properties=cfg.system_properties)
    return resolver


class RewriteRun:
    """Drive every stage of a run, in order, for one :class:`RunConfig`."""

    def __init__(
        self,
        cfg: RunConfig,
        session: Optional[requests.Session] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.cfg = cfg
        self.root = Path(cfg.project_root).resolve()
        self.session = session or requests.Session()
        self.environ = dict(os.environ if environ is None else environ)
        self.resolver = build_resolver(cfg, self.session)
        self.loader = BuildDescriptorLoader(
            self.resolver,
            system_properties=cfg.system_properties,
            active_profiles=cfg.active_profiles,
            environ=self.environ,
        )
        self.assembler = ClasspathAssembler(self.resolver, self.loader)
        self.declarative: Optional[DeclarativeRuleSet] = None
        self.selected_ids: List[str] = []

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def build_registry(self) -> Tuple[RegistryChain, LoadedExtensions]:
        chain = RegistryChain(builtin_registry())
        loader = ExtensionLoader(
            self.assembler,
            enabled=self.cfg.extensions_enabled,
            extend_host_registry=self.cfg.extend_host_registry,
        )
        loaded = loader.load(self.cfg.extensions, chain)
        rule_file = self.cfg.resolve_config_location()
        if rule_file is not None:
            self.declarative = load_declarative_rules(rule_file, chain)
        elif self.cfg.config_location and self.cfg.config_location != defaults.DEFAULT_CONFIG_LOCATION:
            logger.warning("Rule file %s not found", self.cfg.config_location)
        return chain, loaded

    def select_rule(self, chain: RegistryChain) -> Optional[Rule]:
        """The configured rule to run, or None when nothing is selected."""
        if self.cfg.rule_id:
            rule = configure_rule(chain.select(self.cfg.rule_id), self.cfg.rule_options)
            self.selected_ids = [rule.name]
        elif self.declarative is not None and self.declarative.names:
            rules = [chain.select(name) for name in self.declarative.names]
            self.selected_ids = list(self.declarative.names)
            if self.cfg.rule_options:
                # Declarative rules are composite; this raises.
                configure_rule(rules[0], self.cfg.rule_options)
            rule = rules[0] if len(rules) == 1 else CompositeRule("declarative", rules, "Rules from rule file")
        else:
            return None
        self._validate(rule)
        return rule

    def _validate(self, rule: Rule) -> None:
        messages = rule.validate()
        for message in messages:
            logger.warning("Rule validation: %s", message)
        if messages and self.cfg.fail_on_invalid_rules:
            raise RuleFieldConfigurationFailure(
                rule.name, "Rule validation failed: " + "; ".join(messages)
            )
        if messages:
            logger.warning("Rule validation problems detected; execution continues regardless")

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------

    def load_project_model(self) -> Tuple[Optional[EffectiveModel], Optional[ResolvedClasspath]]:
        descriptor = self.root / defaults.DEFAULT_DESCRIPTOR
        if not descriptor.is_file():
            logger.debug("No %s in %s; running without a classpath", defaults.DEFAULT_DESCRIPTOR, self.root)
            return None, None
        model = self.loader.load(descriptor)
        if not has_compiled_sources(self.root, self.cfg.exclusions):
            logger.debug("No compiled sources; skipping classpath assembly")
            return model, None
        return model, self.assembler.assemble_model(model)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def execute(self) -> RunReport:
        chain, loaded = self.build_registry()
        rule = self.select_rule(chain)
        report = RunReport(extensions=loaded)
        if rule is None:
            logger.warning("No rule selected and no declarative rules found for %s", self.root)
            return report
        report.rule_ids = list(self.selected_ids)
        logger.info("Using rule(s): %s", ", ".join(report.rule_ids))

        model, classpath = self.load_project_model()
        report.classpath = classpath
        provenance = ProvenanceBundle.build(self.root, model, self.environ)
        type_context = TypeContext.from_classpath(classpath.paths) if classpath else TypeContext()
        ingestion = SourceIngestion(
            self.root,
            exclusion_globs=self.cfg.exclusions,
            plain_text_masks=self.cfg.plain_text_masks_or_default,
            size_threshold_mb=self.cfg.size_threshold_mb,
            type_context=type_context,
            provenance=provenance,
        )
        units = ingestion.ingest()
        report.source_count = len(units)
        report.parse_failures = list(ingestion.failures)

        ctx = ExecutionContext(project_root=self.root)
        results: List[EditResult] = RuleEngine().run(rule, units, ctx)
        report.warnings = list(ctx.warnings)
        report.classification = classify(results)

        if report.classification.is_empty:
            logger.info("Applying the rule(s) would make no changes")
            return report
        logger.info("Estimated time saved: %s", report.time_saved_text)

        if self.cfg.dry_run:
            report.patch_path = PatchEmitter(self.root).emit_patch(report.classification)
        else:
            applier = ChangeApplier(self.root, self.session, self.cfg.http_timeout)
            report.apply_result = applier.apply_changes(report.classification)
            if report.apply_result.failures:
                raise ApplyFailures(report.apply_result.failures)
        return report

    def close(self) -> None:
        self.session.close()
