"""generate subcommand: one prompt -> text, optionally through a LoRA adapter."""

from __future__ import annotations

import click

from lorafit.cli.main import load_cli_config, lorafit_errors, with_model_path
from lorafit.config import resolve_n_threads
from lorafit.utils.io import setup_python_logging
from lorafit.utils.xla import configure_cpu_threads


@click.command()
@click.argument("model_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--prompt", "-p", required=True, help="Text prompt for generation.")
@click.option(
    "--max-tokens",
    type=int,
    default=None,
    help="Maximum number of tokens to generate (<= 0 uses the default).",
)
@click.option(
    "--temperature",
    type=click.FloatRange(min=0.0),
    default=None,
    help="Sampling temperature. Use 0 for greedy decoding.",
)
@click.option("--top-k", type=click.IntRange(min=1), default=None, help="Top-k cutoff.")
@click.option(
    "--top-p",
    type=click.FloatRange(min=0.0, max=1.0, min_open=True),
    default=None,
    help="Nucleus sampling threshold in (0, 1].",
)
@click.option("--seed", type=int, default=None, help="Random seed for sampling.")
@click.option("--stop", "stops", multiple=True, help="Stop string (repeatable).")
@click.option("--adapter", type=click.Path(exists=True, file_okay=False), default=None, help="LoRA adapter directory.")
@click.option("--scale", type=float, default=None, help="Adapter scale.")
@click.option("--stream/--no-stream", default=None, help="Print chunks as they are produced.")
@click.option("--chatml", is_flag=True, help="Wrap the prompt as a ChatML user turn.")
@click.option("--system", default=None, help="ChatML system prompt (implies --chatml).")
@click.option("--n-ctx", type=int, default=None, help="Context size (<= 0 uses the default).")
@click.option("--threads", type=int, default=None, help="Thread count (<= 0 uses the default).")
@click.option("--config", type=click.Path(exists=True, dir_okay=False), default=None, help="YAML config.")
@click.option("--override", "-o", "overrides", multiple=True, help="Dotpath override (repeatable).")
def generate(
    model_dir: str,
    prompt: str,
    max_tokens: int | None,
    temperature: float | None,
    top_k: int | None,
    top_p: float | None,
    seed: int | None,
    stops: tuple[str, ...],
    adapter: str | None,
    scale: float | None,
    stream: bool | None,
    chatml: bool,
    system: str | None,
    n_ctx: int | None,
    threads: int | None,
    config: str | None,
    overrides: tuple[str, ...],
) -> None:
    """Generate text from MODEL_DIR.

    :param str model_dir: Model directory (from `init-model`).
    :param str prompt: Text prompt.
    :param max_tokens: Token budget (None = config).
    :param temperature: Sampling temperature, 0 for greedy (None = config).
    :param stops: Extra stop strings.
    :param adapter: Optional adapter directory.
    :param stream: Stream chunks to stdout (None = config).
    """
    cfg = with_model_path(load_cli_config(config, overrides), model_dir)
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)
    configure_cpu_threads(resolve_n_threads(threads if threads is not None else cfg.model.n_threads))

    # Deferred: pulls in JAX
    from lorafit.model import JaxEngine
    from lorafit.prompts import Message, build_chatml_prompt
    from lorafit.session import Session
    from lorafit.sinks import CallbackSink

    if chatml or system:
        prompt = build_chatml_prompt([Message("user", prompt)], system=system)
    stop_strings = tuple(cfg.generate.stop_strings) + tuple(stops)
    stream = cfg.generate.stream if stream is None else stream
    overrides_ = dict(
        max_tokens=max_tokens,
        temperature=temperature,
        top_k=top_k,
        top_p=top_p,
        seed=seed,
        stop_strings=stop_strings,
    )

    errors: list[str] = []
    with lorafit_errors(), Session(JaxEngine(seed=cfg.model.init_seed), cfg) as session:
        info = session.load_model(n_threads=threads, n_ctx=n_ctx)
        click.echo(info.summary(), err=True)
        if adapter is not None:
            session.load_adapter(adapter, scale=scale)

        if stream:
            sink = CallbackSink(
                token=lambda chunk: click.echo(chunk, nl=False),
                complete=lambda: click.echo(),
                error=errors.append,
            )
            result = session.generate_streaming(prompt, sink=sink, **overrides_)
        else:
            result = session.generate(prompt, **overrides_)
            click.echo(result.text)

    if errors:
        raise click.ClickException(errors[0])
    if result is not None:
        click.echo(
            f"[lorafit] {result.state.value} ({result.stop_reason.value}) | "
            f"prompt {result.n_prompt_tokens} tok | generated {result.n_generated} tok",
            err=True,
        )
