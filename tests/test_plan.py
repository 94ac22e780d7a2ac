import pytest

from graphci.config import load_config_text
from graphci.errors import ConfigError
from graphci.plan import active_workflows, make_context, materialize

PIPELINE = """
parameters:
  workflow: {type: string, default: system}
  target: {type: string, default: dev}
jobs:
  build:
    steps:
      - run: make TARGET=<< pipeline.parameters.target >> REV=<< pipeline.git.revision >>
  release:
    timeout: 60
    steps:
      - run: ./release << pipeline.git.tag >>
workflows:
  system:
    when: {equal: [system, << pipeline.parameters.workflow >>]}
    jobs:
      - build
      - release:
          requires: [build]
          timeout: 5
          filters:
            tags:
              only: /v.*/
  nightly:
    when: {equal: [nightly, << pipeline.parameters.workflow >>]}
    jobs: [build]
"""


@pytest.fixture
def defs():
    return load_config_text(PIPELINE)


def test_active_workflows_follow_parameters(defs):
    assert active_workflows(defs, make_context(defs, sha="abc")) == ["system"]
    nightly = make_context(defs, sha="abc", overrides={"workflow": "nightly"})
    assert active_workflows(defs, nightly) == ["nightly"]


def test_inactive_workflow_cannot_be_materialized(defs):
    with pytest.raises(ConfigError, match="not active"):
        materialize(defs, make_context(defs, sha="abc"), "nightly")


def test_commands_are_interpolated(defs):
    context = make_context(defs, sha="abc", overrides={"target": "stage"})
    plan = materialize(defs, context, "system")

    assert plan.job("build").template.steps[0].command == "make TARGET=stage REV=abc"
    # definitions themselves are untouched
    assert "<<" in defs.template("build").steps[0].command


def test_filters_evaluated_at_plan_time(defs):
    branch_build = materialize(defs, make_context(defs, sha="abc", branch="main"), "system")
    assert branch_build.filtered_out() == ["release"]

    tag_build = materialize(defs, make_context(defs, sha="abc", tag="v1.0"), "system")
    assert tag_build.filtered_out() == []
    assert tag_build.job("release").template.steps[0].command == "./release v1.0"


def test_instance_timeout_wins(defs):
    plan = materialize(defs, make_context(defs, sha="abc"), "system")
    assert plan.job("release").timeout == 5
    assert plan.job("build").timeout is None


def test_plan_levels_and_indexes(defs):
    plan = materialize(defs, make_context(defs, sha="abc"), "system")
    assert plan.levels() == [["build"], ["release"]]
    assert [plan.job(j).index for j in ("build", "release")] == [0, 1]


def test_empty_tag_and_branch_mean_unset(defs):
    context = make_context(defs, sha="abc", tag="", branch="")
    assert context.tag is None and context.branch is None
