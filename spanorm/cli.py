"""CLI entry point for spanorm using Click."""
import click

STAGE_ORDER = ["preprocess", "fit", "adjust"]


def _run_stage(stage, config):
    """Import and run a single pipeline stage."""
    if stage == "preprocess":
        from .commands import preprocess as cmd
    elif stage == "fit":
        from .commands import fit as cmd
    elif stage == "adjust":
        from .commands import adjust as cmd
    else:
        raise click.BadParameter(f"Unknown stage: {stage}")
    cmd.run(config)


@click.group()
@click.version_option(version="0.1.0")
def cli():
    """Spatially aware library-size normalisation."""
    pass


@cli.command("init-config")
@click.option("--output", "-o", required=True, type=click.Path(dir_okay=False), help="Where to write the YAML")
@click.option("--input", "input_path", default=None, type=click.Path(), help="Input .h5ad to record in the config")
def init_config(output, input_path):
    """Write a config YAML with every option at its default."""
    from .config import Config

    Config(input=input_path).save_yaml(output)
    click.echo(f"Wrote default config to {output}")


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True), help="Path to config YAML")
def preprocess(config):
    """Filter genes and locations of the input dataset."""
    _run_stage("preprocess", config)


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True), help="Path to config YAML")
def fit(config):
    """Fit the per-gene spatial model and save it."""
    _run_stage("fit", config)


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True), help="Path to config YAML")
@click.option("--method", "-m", default=None, type=click.Choice(["logpac", "pearson", "meanbio", "medbio"]), help="Override adj.method")
@click.option("--scale-factor", "-s", default=None, type=float, help="Override scale.factor")
def adjust(config, method, scale_factor):
    """Write adjusted expression using the saved fit."""
    from .commands import adjust as adjust_cmd

    adjust_cmd.run(config, method=method, scale_factor=scale_factor)


@cli.command("run")
@click.argument("stages", nargs=-1, required=True)
@click.option("--config", "-c", required=True, type=click.Path(exists=True), help="Path to config YAML")
def run_pipeline(stages, config):
    """Run pipeline stages sequentially.

    \b
    STAGES:
        preprocess, fit, adjust  - Run specific stages in pipeline order
        all                      - Run every stage

    \b
    EXAMPLES:
        spanorm run all -c configs/visium.yaml
        spanorm run fit adjust -c configs/visium.yaml
    """
    stages = [s.lower() for s in stages]
    if "all" in stages:
        stages = list(STAGE_ORDER)

    invalid = set(stages) - set(STAGE_ORDER)
    if invalid:
        raise click.BadParameter(f"Unknown stage(s): {', '.join(sorted(invalid))}. Valid: {', '.join(STAGE_ORDER)}, or 'all'")

    ordered = [s for s in STAGE_ORDER if s in stages]
    click.echo(f"Running stages: {' → '.join(ordered)}")
    for stage in ordered:
        click.echo(f"\n{'='*60}")
        click.echo(f"  Stage: {stage}")
        click.echo(f"{'='*60}\n")
        _run_stage(stage, config)
    click.echo(f"\nAll stages complete.")


if __name__ == "__main__":
    cli()
