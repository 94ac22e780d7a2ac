import pytest

from graphci.dsl import attach, checkout, definitions, invoke, job, matrix, persist, sh, use, wf
from graphci.errors import CycleDetected, UnresolvedReference
from graphci.model import ExecutorKind, StepKind


def test_job_builds_a_template():
    t = job("build", checkout(), sh("Build", "make", cwd="src", env={"N": 2}), image="alpine", timeout=60)

    assert [s.kind for s in t.steps] == [StepKind.CHECKOUT, StepKind.RUN]
    assert t.steps[1].working_directory == "src"
    assert t.steps[1].environment == {"N": "2"}
    assert t.executor.kind is ExecutorKind.CONTAINER
    assert t.executor.image == "alpine"
    assert t.timeout == 60


def test_job_without_steps_is_a_join():
    assert job("join").is_join
    assert job("vm", sh("x", "true"), machine=True).executor.kind is ExecutorKind.VM


def test_persist_and_attach_params():
    p = persist("dist", "*.whl", "*.tar.gz")
    assert p.root == "dist"
    assert p.paths == ["*.whl", "*.tar.gz"]

    a = attach("here", root="dist")
    assert (a.root, a.at) == ("dist", "here")
    assert attach("dist").root == "dist"

    with pytest.raises(ValueError):
        persist("dist")


def test_invoke_folds_optional_into_requires():
    i = invoke("package", requires=["lint"], optional=["docs"], branches="main")
    assert i.id == "package"
    assert i.requires == ("lint", "docs")
    assert i.optional_requires == ("docs",)
    assert i.filters.branches == ("main",)


def test_matrix_expands_into_workflow():
    w = wf(
        "checks",
        "build",
        matrix("py", ["3.11", "3.12"]).jobs(lambda v: invoke("test", name=f"test-py{v}", requires=["build"])),
    )
    assert [j.id for j in w.jobs] == ["build", "test-py3.11", "test-py3.12"]
    assert all(j.template == "test" for j in w.jobs[1:])


def test_definitions_expand_blocks_and_validate():
    defs = definitions(
        jobs=[job("build", use("prelude"), sh("Build", "make")), job("test", sh("Test", "make test"))],
        workflows=[wf("w", "build", invoke("test", requires=["build"]))],
        blocks={"prelude": [checkout()]},
        parameters={"target": {"type": "string", "default": "dev"}},
    )
    assert [s.name for s in defs.template("build").steps] == ["Checkout code", "Build"]
    assert defs.parameters["target"].default == "dev"
    assert defs.source == "<dsl>"


def test_definitions_reject_unknown_template():
    with pytest.raises(UnresolvedReference):
        definitions(jobs=[], workflows=[wf("w", "ghost")])


def test_definitions_reject_cycles():
    with pytest.raises(CycleDetected):
        definitions(
            jobs=[job("a", sh("a", "true"))],
            workflows=[wf("w", invoke("a", name="x", requires=["y"]), invoke("a", name="y", requires=["x"]))],
        )
