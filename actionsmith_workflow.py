# actionsmith_workflow.py
# Build -> test -> deploy pipeline: a composite setup action, a reusable
# terraform deploy workflow, and per-environment secrets.
from __future__ import annotations

from actionsmith import action, call, input_, job, output, retry, secret, sh, uses, wf

setup_python = action(
    "setup-python",
    sh("Select interpreter", 'echo "python=python${{ inputs.python-version }}" >> "$ACTIONSMITH_OUTPUT"', id="select"),
    sh("Show version", "${{ steps.select.outputs.python }} --version || python3 --version"),
    inputs=[input_("python-version", required=True)],
    outputs=[output("python", "${{ steps.select.outputs.python }}")],
)

terraform_deploy = wf(
    "terraform-deploy",
    job(
        "plan",
        sh("Init", "echo terraform init -backend-config=env/${{ inputs.environment }}.hcl"),
        sh(
            "Plan",
            'echo terraform plan -out=tfplan && echo "changes=0" >> "$ACTIONSMITH_OUTPUT"',
            id="plan",
            env={"TF_TOKEN": "${{ secrets.cloud-token }}"},
            retry=retry(3, backoff=5.0),
        ),
        outputs={"changes": "${{ steps.plan.outputs.changes }}"},
    ),
    job(
        "apply",
        sh("Apply", "echo terraform apply tfplan", env={"TF_TOKEN": "${{ secrets.cloud-token }}"}),
        needs=["plan"],
        if_="needs.plan.outputs.changes != '0' || inputs.environment == 'production'",
    ),
    inputs=[input_("environment", required=True)],
    secrets=[secret("cloud-token")],
    outputs=[output("changes", "${{ jobs.plan.outputs.changes }}")],
)

ACTIONS = {"./actions/setup-python": setup_python}
WORKFLOWS = {"./workflows/terraform-deploy": terraform_deploy}


def workflow():
    return wf(
        "ci",
        job(
            "lint",
            uses("Setup", "./actions/setup-python", with_={"python-version": "3"}),
            sh("Ruff", "ruff check . || echo 'ruff not installed'"),
        ),
        job(
            "test",
            uses("Setup", "./actions/setup-python", id="py", with_={"python-version": "3"}),
            sh("Pytest", "${{ steps.py.outputs.python }} -m pytest -q || echo 'pytest not installed'"),
            needs=["lint"],
        ),
        call(
            "deploy",
            "./workflows/terraform-deploy",
            with_={"environment": "${{ environment.name || 'staging' }}"},
            secrets={"cloud-token": "${{ secrets.CLOUD_TOKEN }}"},
            needs=["test"],
            if_="github.ref == 'refs/heads/main'",
        ),
        job(
            "notify",
            sh("Report", "echo deploy=${{ needs.deploy.result }}"),
            needs=["deploy"],
            if_="always()",
        ),
        secrets=[secret("CLOUD_TOKEN")],
        on=["push", "workflow_dispatch"],
    )
