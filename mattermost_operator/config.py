import typing as t

from pydantic import Field, conint, constr

from configomatic import Configuration as BaseConfiguration, Section, LoggingConfiguration


class UpdateJobConfiguration(Section):
    """
    Configuration for the job that verifies a new image before it is rolled out.
    """
    #: The name of the update job
    #: There is at most one update job per namespace
    name: constr(min_length = 1) = "mattermost-update-check"
    #: The number of retries before the job is considered failed
    backoff_limit: conint(ge = 0) = 10
    #: The command that the job runs using the new image
    command: t.List[constr(min_length = 1)] = Field(
        default_factory = lambda: ["mattermost", "version"]
    )


class Configuration(
    BaseConfiguration,
    default_path = "/etc/mattermost/operator.yaml",
    path_env_var = "MATTERMOST_OPERATOR_CONFIG",
    env_prefix = "MATTERMOST_OPERATOR"
):
    """
    Top-level configuration model.
    """
    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory = LoggingConfiguration)

    #: The API group of the installation CRDs
    api_group: constr(min_length = 1) = "installation.mattermost.com"
    #: A list of categories to place CRDs into
    crd_categories: t.List[constr(min_length = 1)] = Field(
        default_factory = lambda: ["mattermost"]
    )

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length = 1) = "mattermost-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt = 0) = 600

    #: The number of seconds to wait between periodic reconciliations
    timer_interval: conint(gt = 0) = 120

    #: The maximum number of installations that can be reconciling at once
    max_reconciling: conint(gt = 0) = 20
    #: The number of seconds to wait before retrying an installation that was
    #: refused because the reconciling limit was reached
    requeue_on_limit_delay: conint(gt = 0) = 20
    #: The maximum number of installations that are processed concurrently
    max_concurrent_reconciles: conint(gt = 0) = 10

    #: The number of seconds to wait before re-checking an installation that is not stable
    health_check_requeue_delay: conint(gt = 0) = 6
    #: The number of seconds to wait before re-checking an installation whose
    #: resources are not ready, e.g. while the update job is running
    resources_ready_delay: conint(gt = 0) = 10

    #: The annotation used to store the last applied configuration of child resources
    last_applied_annotation: constr(min_length = 1) = "mattermost.com/last-applied"

    #: The update job configuration
    update_job: UpdateJobConfiguration = Field(default_factory = UpdateJobConfiguration)


settings = Configuration()
