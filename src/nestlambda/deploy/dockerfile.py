"""Dockerfile generation for NestJS Lambda container images.

The generated Dockerfile has two stages: a Node.js build stage that installs
dependencies, compiles the application and prunes dev dependencies, and a
runtime stage on the AWS Lambda Node.js base image that only receives the
compiled output and production dependencies.
"""

from jinja2 import Template

# Jinja2 template for generating Dockerfiles
NESTLAMBDA_DOCKERFILE_TEMPLATE = """\
# nestlambda image for {{ service }}
# Generated by nestlambda; edit and set image.dockerfile to customize.

# ---- build stage ----
FROM --platform={{ platform }} node:{{ node_version }}-alpine AS build

WORKDIR /usr/src/app

COPY package*.json ./
RUN npm ci

COPY . .
RUN {{ build_command }}
RUN npm prune --omit=dev

# ---- runtime stage ----
FROM --platform={{ platform }} public.ecr.aws/lambda/nodejs:{{ node_version }}

LABEL org.opencontainers.image.title="{{ service }}"
LABEL com.nestlambda.managed="true"

COPY --from=build /usr/src/app/package.json ${LAMBDA_TASK_ROOT}/
COPY --from=build /usr/src/app/node_modules ${LAMBDA_TASK_ROOT}/node_modules
COPY --from=build /usr/src/app/dist ${LAMBDA_TASK_ROOT}/dist

CMD ["{{ handler }}"]
"""


def generate_dockerfile(
    service: str,
    *,
    node_version: str = "20",
    platform: str = "linux/amd64",
    build_command: str = "npm run build",
    handler: str = "dist/lambda.handler",
) -> str:
    """Generate a multi-stage Dockerfile for a NestJS Lambda image.

    Args:
        service: Service name used for labels
        node_version: Node.js major version for both stages
        platform: Target platform (linux/amd64 or linux/arm64)
        build_command: Command compiling the application in the build stage
        handler: Lambda handler passed as the image CMD

    Returns:
        Generated Dockerfile content as a string

    Example:
        >>> dockerfile = generate_dockerfile("your-app")
        >>> "AS build" in dockerfile
        True
    """
    template = Template(NESTLAMBDA_DOCKERFILE_TEMPLATE, trim_blocks=True)

    return template.render(
        service=service,
        node_version=node_version,
        platform=platform,
        build_command=build_command,
        handler=handler,
    )
