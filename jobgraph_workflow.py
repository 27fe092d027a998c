# jobgraph_workflow.py
# Build pipeline for a .NET API + Node web app: version, build/test/lint both
# halves in parallel, scan, then package everything into one Docker image.
from __future__ import annotations

from jobgraph.dsl import wf, job, sh, uses, matrix
from jobgraph.model import Concurrency


def workflow():
    return wf(
        job(
            "versioning",
            uses("Checkout code", "actions/checkout@v4", params={"ref": "${{ github.head_ref }}"}),
            uses("Derive version", "codacy/git-version@2.8.0", id="version",
                 params={"release-branch": "main", "prefix": "v"}),
            sh(
                "Tag the repository",
                'git config user.email "${{ github.actor }}@users.noreply.github.com"\n'
                'git config user.name "${{ github.actor }}"\n'
                'git tag -a ${{ steps.version.outputs.version }} -m "Release ${{ steps.version.outputs.version }}"\n'
                "git push --tags",
                condition="github.ref == 'refs/heads/main'",
            ),
            outputs={"version": "${{ steps.version.outputs.version }}"},
            display_name="Versioning Project",
            requires=["git"],
        ),

        job(
            "backend-build-and-test",
            sh("DotNet Restore", "dotnet restore ./src/Todo.Api.sln"),
            sh("DotNet Build", "dotnet build --no-restore --configuration Release ./src/Todo.Api.sln"),
            sh(
                "DotNet Test",
                "dotnet test --no-restore --no-build ./src/Todo.Api.sln --configuration Release "
                '--logger trx --results-directory "TestResults"',
            ),
            uses("Upload test results", "actions/upload-artifact@v4",
                 params={"name": "dotnet-test-results", "path": "TestResults"}),
            sh(
                "Publish",
                "dotnet publish ./src/api/Todo.Api.csproj --no-restore --no-build --configuration Release --output ./publish",
            ),
            uses("Upload DotNet artifact", "actions/upload-artifact@v4",
                 params={"name": "api", "path": "./publish", "if-no-files-found": "error"}),
            needs=["versioning"],
            display_name="Backend Build and Test",
            requires=["dotnet"],
        ),

        job(
            "backend-lint",
            uses("Lint C#", "lint", params={"tool": "dotnet", "args": "format --verify-no-changes", "files": "./src/Todo.Api.sln"}),
            needs=["versioning"],
            display_name="Backend Lint",
        ),

        job(
            "frontend-build-and-test",
            sh("Node Install dependencies", "npm ci"),
            sh("Node Test", "npm run lint"),
            sh("Node Build", "npm run build"),
            uses("Upload Node artifact", "actions/upload-artifact@v4",
                 params={"name": "web", "path": "dist", "if-no-files-found": "error"}),
            needs=["versioning"],
            cwd="src/web",
            display_name="Frontend Build and Test",
            requires=["npm"],
        ),

        job(
            "frontend-lint",
            sh("Node Install dependencies", "npm ci"),
            sh("Node Lint", "npm run lint"),
            needs=["versioning"],
            cwd="src/web",
            display_name="Frontend Lint",
            requires=["npm"],
        ),

        # needs a public repository or an advanced security license
        job(
            "dependency-check",
            sh("Dependency Review", "npm audit --audit-level=high"),
            needs=["versioning"],
            condition="false",
            display_name="Dependency Check",
        ),

        matrix(include=[
            {"name": "Backend", "language": "csharp", "build-mode": "autobuild"},
            {"name": "Frontend", "language": "javascript", "build-mode": "none"},
        ]).jobs(
            lambda row: job(
                f"code-security-check-{row['language']}",
                sh(
                    "Initialize CodeQL - ${{ matrix.name }}",
                    "codeql database create .codeql/${{ matrix.language }} "
                    "--language=${{ matrix.language }} --build-mode=${{ matrix.build-mode }}",
                ),
                sh(
                    "Analyse CodeQL - ${{ matrix.name }}",
                    "codeql database analyze .codeql/${{ matrix.language }} "
                    "--format=sarif-latest --output=codeql-${{ matrix.language }}.sarif",
                ),
                needs=["versioning"],
                display_name=f"Code Security Check ({row['name']})",
                requires=["codeql"],
            )
        ),

        job(
            "build-docker-image",
            uses("Download artifacts", "actions/download-artifact@v4", params={"path": "app"}),
            uses("Build Docker Image", "docker", params={
                "command": "build",
                "tags": "${{ vars.DOCKERHUB_REPOSITORY }}:${{ env.version }}",
            }),
            uses("Tag Docker image as Latest", "docker", params={
                "command": "tag",
                "source": "${{ vars.DOCKERHUB_REPOSITORY }}:${{ env.version }}",
                "target": "${{ vars.DOCKERHUB_REPOSITORY }}:latest",
            }, condition="github.ref == 'refs/heads/main'"),
            uses("Docker Login", "docker", params={
                "command": "login",
                "username": "${{ secrets.DOCKERHUB_USERNAME }}",
                "password": "${{ secrets.DOCKERHUB_TOKEN }}",
            }),
            uses("Docker Push", "docker", params={
                "command": "push",
                "all-tags": "true",
                "image": "${{ vars.DOCKERHUB_REPOSITORY }}",
            }),
            needs=["versioning", "backend-build-and-test", "frontend-build-and-test"],
            env={"version": "${{ needs.versioning.outputs.version }}"},
            display_name="Build Docker Image",
        ),

        name="Build Project",
        on={
            "push": ["develop", "main"],
            "pull_request": ["develop", "main"],
            "manual": None,
        },
        concurrency=Concurrency(cancel_in_progress=True),
    )
