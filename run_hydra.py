import hydra
from omegaconf import DictConfig, OmegaConf
import spikeinfer
import os
from spikeinfer.data_loader import load_dataset


@hydra.main(version_base=None, config_path="conf", config_name="config")
def main(cfg: DictConfig) -> None:
    print("Running with config:\n", OmegaConf.to_yaml(cfg))
    print(f"Current working directory: {os.getcwd()}")

    from hydra.core.hydra_config import HydraConfig

    output_dir = HydraConfig.get().runtime.output_dir

    # Load data
    def _path(key):
        value = cfg.data.get(key)
        return None if value is None else hydra.utils.to_absolute_path(value)

    dataset = load_dataset(
        counts_path=_path("counts_path"),
        spike_info_path=_path("spike_info_path"),
        batch_path=_path("batch_path"),
        spike_prefix=cfg.data.get("spike_prefix"),
        layer=cfg.data.get("layer"),
    )

    # Prepare arguments for run_mcmc from the config
    mcmc_kwargs = OmegaConf.to_container(cfg.mcmc, resolve=True)
    persist = mcmc_kwargs.pop("persist_draws", False)
    mcmc_kwargs["persist_draws"] = (
        os.path.join(output_dir, "chain") if persist else None
    )
    priors = OmegaConf.to_container(cfg.priors, resolve=True)
    priors = {
        k: tuple(v) if isinstance(v, list) else v for k, v in priors.items()
    }

    # Run the inference
    chain = spikeinfer.run_mcmc(dataset, priors=priors, **mcmc_kwargs)
    print(f"Inference complete: {chain}")

    if not persist:
        chain.to_persisted_draws(os.path.join(output_dir, "chain"))

    analysis = cfg.analysis
    if chain.n_draws == 0:
        print("No draws retained; skipping posterior analyses.")
        return

    # Posterior summaries
    for block, summary in chain.summary(prob=analysis.hpd_prob).items():
        summary.to_csv(os.path.join(output_dir, f"summary_{block}.csv"))

    # Variance decomposition and variability tests
    batches = [None]
    if analysis.decompose_batches and dataset.n_batches > 1:
        batches += list(dataset.batch_ids)
    for batch in batches:
        suffix = "" if batch is None else f"_batch{batch}"
        decomposition = chain.decompose(dataset, batch=batch)
        decomposition.to_dataframe().to_csv(
            os.path.join(output_dir, f"variance_decomposition{suffix}.csv")
        )
        for kind, detect in (
            ("hvg", spikeinfer.detect_hvg),
            ("lvg", spikeinfer.detect_lvg),
        ):
            test = detect(
                decomposition, **OmegaConf.to_container(analysis[kind])
            )
            print(test.summary())
            test.to_dataframe().to_csv(
                os.path.join(output_dir, f"{kind}{suffix}.csv")
            )

    # Denoised expression
    if analysis.denoised_rates:
        rates = chain.denoised_rates(
            dataset, batch_size=analysis.denoise_batch_size, verbose=True
        )
        output_file = os.path.join(output_dir, "denoised_rates.csv")
        print(f"Saving denoised rates to {output_file}")
        rates.to_csv(output_file)


if __name__ == "__main__":
    main()
