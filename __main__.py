# __main__.py
# Entry point for `pulumi up` in this directory; the appdeploy pipeline runs
# the same program inline through the Automation API.
import pulumi

from appdeploy.program import run_program


def main():
    config = pulumi.Config("appdeploy")
    run_program(
        config.get("definition") or "config.yaml",
        environment=config.get("environment"),
    )


if __name__ == "__main__":
    main()
