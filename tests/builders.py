"""
Builders for the stacks and composition files the tests share.
"""

import textwrap

from infracompose.core.models.pipeline import Pipeline, PipelineStage, StageAction
from infracompose.core.models.resource import create
from infracompose.core.models.stack import Stack


def server_pipeline() -> Pipeline:
    return Pipeline(
        name="server",
        stages=[
            PipelineStage(
                name="DownloadCode",
                action=StageAction.SOURCE,
                output_artifact="source",
                config={"repository": "coop/server", "branch": "master"},
            ),
            PipelineStage(
                name="BuildCode",
                action=StageAction.BUILD,
                input_artifact="source",
                output_artifact="build",
                config={"commands": ["mvn --quiet install"]},
            ),
            PipelineStage(
                name="DeployCode",
                action=StageAction.DEPLOY,
                input_artifact="build",
                config={"deployment_group": "${ref:deploy_group}"},
            ),
        ],
    )


def make_infra_stacks() -> list[Stack]:
    """Infrastructure exporting a role; ServerDeploy and UIDeploy importing it."""
    infra = Stack.declare("Infrastructure")
    infra.add_resource(create("vpc", "network", {"cidr": "10.0.1.0/20"}))
    infra.add_resource(create("db", "database", {
        "engine": "mysql", "instance_class": "db.t3.micro", "network": "${ref:vpc}",
    }))
    infra.add_resource(create("ec2_role", "role", {"assumed_by": "ec2.amazonaws.com"}))
    infra.add_resource(create("app_server", "compute_instance", {
        "instance_type": "t4g.small", "image": "al2023-arm64", "network": "${ref:vpc}",
    }))
    infra.export("ec2_role", "ec2_role")
    infra.export("app_server", "app_server")

    server = Stack.declare("ServerDeploy")
    server.add_resource(create("artifacts", "artifact_bucket", {}))
    server.add_resource(create("app", "deploy_application", {"application_name": "ChickenCoop"}))
    server.add_resource(create("deploy_group", "deployment_group", {"application": "${ref:app}"}))
    server.add_resource(create("artifact_read", "policy", {
        "role": "${import:Infrastructure.ec2_role}",
        "actions": ["s3:GetObject"],
        "resources": ["${ref:artifacts}"],
    }))
    server.add_pipeline(server_pipeline())

    ui = Stack.declare("UIDeploy")
    ui.add_resource(create("artifacts", "artifact_bucket", {}))
    ui.add_resource(create("artifact_read", "policy", {
        "role": "${import:Infrastructure.ec2_role}",
        "actions": ["s3:GetObject"],
        "resources": ["${ref:artifacts}"],
    }))

    return [infra, server, ui]


COMPOSITION_YAML = textwrap.dedent("""\
    project: coop
    provider:
      region: us-east-1
      account: "123456789012"
    stacks:
      - name: Infrastructure
        resources:
          - id: vpc
            kind: network
            config: {cidr: 10.0.1.0/20}
          - id: db
            kind: database
            config:
              engine: mysql
              instance_class: db.t3.micro
              network: ${ref:vpc}
          - id: ec2_role
            kind: role
            config: {assumed_by: ec2.amazonaws.com}
          - id: app_server
            kind: compute_instance
            config:
              instance_type: t4g.small
              image: al2023-arm64
              network: ${ref:vpc}
              user_data:
                commands: ["echo hello"]
        exports:
          ec2_role: ec2_role
          db_secret: {resource: db, attribute: secret_arn, optional: true}
      - name: ServerDeploy
        resources:
          - id: artifacts
            kind: artifact_bucket
          - id: deploy_group
            kind: deployment_group
            config: {application: ChickenCoop}
          - id: artifact_read
            kind: policy
            config:
              role: ${import:Infrastructure.ec2_role}
              actions: ["s3:GetObject"]
              resources: ["${ref:artifacts.bucket_arn}"]
          - id: secret_read
            kind: policy
            when: Infrastructure.db_secret
            config:
              role: ${import:Infrastructure.ec2_role}
              actions: ["secretsmanager:GetSecretValue"]
              resources: ["${import:Infrastructure.db_secret}"]
        pipelines:
          - name: server
            stages:
              - {name: DownloadCode, action: source, output: source, config: {repository: coop/server}}
              - {name: BuildCode, action: build, input: source, output: build, config: {commands: [mvn install]}}
              - {name: DeployCode, action: deploy, input: build, config: {deployment_group: "${ref:deploy_group}"}}
""")

