# stageci_pipeline.py
# Build, scan and deploy pipeline for the Spring PetClinic image.
from __future__ import annotations

from stageci.dsl import (
    always,
    parallel,
    pipeline,
    secret_text,
    sequential,
    sh,
    stage,
    username_password,
)

IMAGE = "${REGISTRY}/spring-petclinic:${BUILD_TAG}"


def pipeline_spec():
    return pipeline(
        "spring-petclinic",
        stage(
            "build",
            sh("Resolve dependencies", "./mvnw dependency:go-offline -B"),
            sh("Package", "./mvnw clean package -DskipTests -B"),
            sh("Verify jar", "ls -lh target/*.jar"),
            post=[always(
                sh("Archive jar", "mkdir -p .stageci/artifacts && cp target/*.jar .stageci/artifacts/",
                   continue_on_error=True),
            )],
        ),
        parallel(
            "quality",
            stage(
                "unit-tests",
                sh("Test", "./mvnw test -B"),
                post=[always(sh("Publish test results", "ls target/surefire-reports", continue_on_error=True))],
            ),
            stage(
                "lint",
                sh("Checkstyle", "./mvnw checkstyle:check -B", continue_on_error=True),
            ),
            stage(
                "dependency-scan",
                sh("Trivy fs", "trivy fs --exit-code 1 --severity HIGH,CRITICAL .", continue_on_error=True),
            ),
        ),
        sequential(
            "image",
            stage(
                "docker-build",
                sh("Build image", f'docker build -t "{IMAGE}" .'),
            ),
            parallel(
                "image-checks",
                stage(
                    "trivy-image",
                    sh("Scan image", f'trivy image --exit-code 1 --severity CRITICAL "{IMAGE}"',
                       continue_on_error=True),
                ),
                stage(
                    "hadolint",
                    sh("Lint Dockerfile", "hadolint Dockerfile", continue_on_error=True),
                ),
            ),
            stage(
                "push",
                sh("Login", 'echo "$REGISTRY_PASS" | docker login -u "$REGISTRY_USER" --password-stdin "$REGISTRY"'),
                sh("Push", f'docker push "{IMAGE}"'),
                credentials=[username_password("registry", "REGISTRY_USER", "REGISTRY_PASS")],
            ),
        ),
        stage(
            "deploy",
            sh("Apply manifests", "kubectl apply -f k8s/"),
            sh("Wait for rollout", "kubectl rollout status deployment/petclinic --timeout=300s"),
            env={"KUBECONFIG": "${HOME}/.kube/config"},
            credentials=[secret_text("kube-token", "KUBE_TOKEN")],
        ),
        env={
            "REGISTRY": "registry.example.com/petclinic",
            "BUILD_TAG": "${BUILD_NUMBER}",
            "JAVA_OPTS": "-XX:+UseContainerSupport -XX:MaxRAMPercentage=75.0",
        },
        post=[
            always(
                sh("Docker logout", 'docker logout "$REGISTRY"', continue_on_error=True),
                sh("Prune images", "docker image prune -f", continue_on_error=True),
            ),
        ],
    )
